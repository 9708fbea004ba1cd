"""Execution pipeline: one request/response cycle.

    validate -> admit -> provision -> inject -> [compile] -> run -> capture -> teardown

Validation and provisioning failures are raised. Everything after
provisioning ends in exactly one ExecutionResult, and teardown plus slot
release run on every path, including caller cancellation. Once a result
exists it is returned right away; the container is removed on a detached
task that releases the slot when done.
"""

from __future__ import annotations

from uuid import uuid4

from polyexec import constants
from polyexec._logging import get_logger
from polyexec.admission import SessionAdmissionController
from polyexec.capture import OutputCapture
from polyexec.exceptions import SandboxRuntimeError
from polyexec.models import ExecutionRequest, ExecutionResult, ExecutionStatus
from polyexec.orchestrator import Completion, ContainerOrchestrator
from polyexec.registry import render, source_path
from polyexec.session import Session
from polyexec.session_types import VALID_STATE_TRANSITIONS, SessionState
from polyexec.validator import RequestValidator, ValidRequest

logger = get_logger(__name__)

_STATUS_TO_STATE: dict[ExecutionStatus, SessionState] = {
    ExecutionStatus.COMPLETED: SessionState.COMPLETED,
    ExecutionStatus.COMPILE_ERROR: SessionState.COMPLETED,
    ExecutionStatus.RUNTIME_ERROR: SessionState.COMPLETED,
    ExecutionStatus.TIMED_OUT: SessionState.TIMED_OUT,
    ExecutionStatus.SANDBOX_ERROR: SessionState.RUNTIME_FAILED,
}


class ExecutionPipeline:
    """Composes validator, admission and orchestrator into run()."""

    def __init__(
        self,
        validator: RequestValidator,
        orchestrator: ContainerOrchestrator,
        admission: SessionAdmissionController,
        stdout_limit_bytes: int = constants.MAX_STDOUT_SIZE,
        stderr_limit_bytes: int = constants.MAX_STDERR_SIZE,
        admission_timeout_seconds: float = constants.ADMISSION_TIMEOUT_SECONDS,
    ) -> None:
        self._validator = validator
        self._orchestrator = orchestrator
        self._admission = admission
        self._stdout_limit = stdout_limit_bytes
        self._stderr_limit = stderr_limit_bytes
        self._admission_timeout = admission_timeout_seconds

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute one request end to end.

        Raises:
            ValidationError: Request rejected, nothing provisioned
            ProvisioningError: No sandbox could be created (incl. capacity)
        """
        valid = self._validator.validate(request)
        language = valid.language
        session_id = uuid4().hex

        reservation = await self._admission.acquire(
            session_id=session_id,
            memory_bytes=language.memory_limit_bytes,
            timeout=self._admission_timeout,
        )
        session: Session | None = None
        try:
            session = await self._orchestrator.provision(language, valid.timeout_ms, session_id=session_id)
            result = await self._execute(session, valid)
        except BaseException:
            # Failure or caller cancellation: finish teardown before propagating
            try:
                if session is not None:
                    await self._orchestrator.teardown_shielded(session)
            finally:
                await self._admission.release(reservation)
            raise

        # The result is final; container removal must not delay it. The slot
        # stays reserved until the container is gone.
        self._orchestrator.teardown_detached(session, lambda: self._admission.release(reservation))
        return result

    async def _execute(self, session: Session, valid: ValidRequest) -> ExecutionResult:
        language = session.language
        source = source_path(language)
        try:
            await self._orchestrator.inject(session, valid.source_code, valid.stdin)

            if language.compile_command is not None:
                compile_capture = self._new_capture()
                completion = await self._step(session, render(language.compile_command, source), compile_capture)
                if completion.timed_out:
                    return await self._finish(session, ExecutionStatus.TIMED_OUT, compile_capture)
                if completion.exit_code != 0:
                    logger.info(
                        "Compilation failed",
                        extra={
                            "session_id": session.session_id,
                            "language": language.id,
                            "exit_code": completion.exit_code,
                        },
                    )
                    return await self._finish(
                        session,
                        ExecutionStatus.COMPILE_ERROR,
                        compile_capture,
                        exit_code=completion.exit_code,
                    )

            run_capture = self._new_capture()
            completion = await self._step(session, render(language.run_command, source, valid.args), run_capture)
            if completion.timed_out:
                return await self._finish(session, ExecutionStatus.TIMED_OUT, run_capture)
            status = ExecutionStatus.COMPLETED if completion.exit_code == 0 else ExecutionStatus.RUNTIME_ERROR
            return await self._finish(session, status, run_capture, exit_code=completion.exit_code)

        except SandboxRuntimeError as e:
            logger.error(
                "Sandbox failed during execution",
                extra={"session_id": session.session_id, "language": language.id, **e.context},
            )
            return await self._finish(session, ExecutionStatus.SANDBOX_ERROR, None, error=e.message)

    async def _step(self, session: Session, argv: list[str], capture: OutputCapture) -> Completion:
        handle = await self._orchestrator.start(session, argv)
        return await self._orchestrator.await_completion(session, handle, capture)

    def _new_capture(self) -> OutputCapture:
        return OutputCapture(stdout_limit=self._stdout_limit, stderr_limit=self._stderr_limit)

    async def _finish(
        self,
        session: Session,
        status: ExecutionStatus,
        capture: OutputCapture | None,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> ExecutionResult:
        """Record the session outcome and build its single result."""
        target = _STATUS_TO_STATE[status]
        # A concurrent shutdown may already have reaped the session
        if target in VALID_STATE_TRANSITIONS.get(session.state, set()):
            await session.transition_state(target)

        stdout = capture.stdout if capture is not None else ""
        stderr = capture.stderr if capture is not None else ""
        truncated = capture.truncated if capture is not None else False
        stdout_truncated = capture.stdout_truncated if capture is not None else False

        if status is ExecutionStatus.TIMED_OUT:
            exit_code = None
            error = f"Execution timed out after {session.timeout_ms} ms"
        elif status is ExecutionStatus.COMPILE_ERROR:
            error = stderr or stdout or f"Compilation failed with exit code {exit_code}"
        elif status is ExecutionStatus.RUNTIME_ERROR:
            error = stderr or f"Process exited with code {exit_code}"
        elif status is ExecutionStatus.COMPLETED:
            error = stderr or None

        output = "" if status is ExecutionStatus.COMPILE_ERROR else stdout
        if stdout_truncated and output:
            output += constants.TRUNCATION_MARKER

        result = ExecutionResult(
            success=status is ExecutionStatus.COMPLETED,
            status=status,
            output=output,
            error=error,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            execution_time_ms=session.elapsed_ms(),
            timed_out=status is ExecutionStatus.TIMED_OUT,
            truncated=truncated,
            language=session.language.id,
            session_id=session.session_id,
        )
        logger.info(
            "Execution finished",
            extra={
                "session_id": session.session_id,
                "language": session.language.id,
                "status": status.value,
                "exit_code": exit_code,
                "execution_time_ms": result.execution_time_ms,
                "stdout_bytes": capture.stdout_bytes if capture is not None else 0,
                "truncated": truncated,
            },
        )
        return result
