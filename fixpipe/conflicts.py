"""AI-assisted merge conflict resolution.

The resolver hands the conflicted files to an agent session (through the
retry runtime), verifies that no conflicts remain, and then completes the
interrupted rebase or merge.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol

from fixpipe.agent import AgentExecutor
from fixpipe.cancellation import CancellationToken
from fixpipe.errors import AgentExecutionError
from fixpipe.models import AgentResult
from fixpipe.prompts import build_conflict_resolution_prompt
from fixpipe.retry import RetryConfig, execute_with_retry
from fixpipe.vcs import Err, VcsService

logger = logging.getLogger(__name__)

Operation = Literal["rebase", "merge"]


@dataclass
class ConflictResolution:
    success: bool
    resolved_files: list[str] = field(default_factory=list)
    unresolved_files: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None


class ConflictResolver(Protocol):
    async def resolve(
        self,
        files: list[str],
        source_branch: str,
        target_branch: str,
        operation: Operation,
    ) -> ConflictResolution: ...


class AgentConflictResolver:
    """Resolves conflicts in the caller's working tree with an agent session."""

    def __init__(
        self,
        agent: AgentExecutor,
        vcs: VcsService,
        work_dir: Path,
        retry_config: RetryConfig | None = None,
        model_override: str | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.agent = agent
        self.vcs = vcs
        self.work_dir = Path(work_dir)
        self.retry_config = retry_config or RetryConfig()
        self.model_override = model_override
        self.token = token

    async def resolve(
        self,
        files: list[str],
        source_branch: str,
        target_branch: str,
        operation: Operation,
    ) -> ConflictResolution:
        """Resolve the given conflicted files and finish the operation.

        Never raises; failures are reported in the returned resolution.
        """
        if not files:
            return ConflictResolution(success=True)

        logger.info(
            f"Attempting AI conflict resolution for {len(files)} file(s) "
            f"({source_branch} -> {target_branch}, {operation})"
        )
        logger.debug(f"Conflicted files: {', '.join(files)}")

        prompt = build_conflict_resolution_prompt(files, source_branch, operation)
        usage = {"input": 0, "output": 0}

        async def attempt() -> AgentResult:
            result = await self.agent.execute(
                prompt, self.work_dir, model_override=self.model_override
            )
            usage["input"] += result.input_tokens
            usage["output"] += result.output_tokens
            if not result.success:
                raise AgentExecutionError(result.error or "Conflict resolution failed")
            return result

        try:
            retry_result = await execute_with_retry(
                attempt, self.retry_config, self.token, label="conflict resolution"
            )
            if not retry_result.success:
                error = str(retry_result.error or "AI execution failed")
                logger.error(f"AI conflict resolution failed: {error}")
                return ConflictResolution(
                    success=False,
                    unresolved_files=list(files),
                    input_tokens=usage["input"],
                    output_tokens=usage["output"],
                    error=error,
                )

            remaining = await self.vcs.get_conflicted_files()
            if isinstance(remaining, Err):
                return ConflictResolution(
                    success=False,
                    unresolved_files=list(files),
                    input_tokens=usage["input"],
                    output_tokens=usage["output"],
                    error=str(remaining),
                )
            if remaining.value:
                logger.error(
                    f"AI did not resolve all conflicts. Remaining: {', '.join(remaining.value)}"
                )
                return ConflictResolution(
                    success=False,
                    resolved_files=[f for f in files if f not in remaining.value],
                    unresolved_files=remaining.value,
                    input_tokens=usage["input"],
                    output_tokens=usage["output"],
                    error=f"{len(remaining.value)} conflict(s) remain unresolved",
                )

            if operation == "rebase":
                completed = await self.vcs.continue_rebase()
            else:
                completed = await self.vcs.complete_merge()

            if isinstance(completed, Err) or not completed.value:
                detail = str(completed) if isinstance(completed, Err) else "stopped again"
                return ConflictResolution(
                    success=False,
                    resolved_files=list(files),
                    input_tokens=usage["input"],
                    output_tokens=usage["output"],
                    error=f"Could not complete {operation} after resolution: {detail}",
                )
        except Exception as e:
            logger.error(f"AI conflict resolution error: {e}")
            return ConflictResolution(
                success=False,
                unresolved_files=list(files),
                input_tokens=usage["input"],
                output_tokens=usage["output"],
                error=str(e),
            )

        logger.info("AI successfully resolved conflicts")
        return ConflictResolution(
            success=True,
            resolved_files=list(files),
            input_tokens=usage["input"],
            output_tokens=usage["output"],
        )
