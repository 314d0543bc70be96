"""Caller-facing run operation: one request, one backend process, one result."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import ExitStack

from headless_agents.runtime.args import (
    CliInvocation,
    build_invocation,
    build_process_env,
    normalize_model,
    resolve_system_prompt_usage,
)
from headless_agents.runtime.backend import (
    BackendRunError,
    ProcessExecutor,
    ProcessRunRequest,
    ProcessRunResult,
    SubprocessExecutor,
)
from headless_agents.runtime.backends import BackendDescriptor, BackendRegistry, ResolvedBackend
from headless_agents.runtime.events import AssistantEvent, ReasoningEvent, StreamEvent
from headless_agents.runtime.failure_classifier import (
    FailoverError,
    FailoverReason,
    FailoverStatus,
    classify_backend_failure,
    classify_failure_text,
)
from headless_agents.runtime.models import ImageAttachment, RunRequest, RunResult, StreamCallbacks
from headless_agents.runtime.output import extract_cli_output
from headless_agents.runtime.session import SessionDecision, resolve_session
from headless_agents.runtime.staging import ResourceStager, TempDirStager
from headless_agents.runtime.streaming import StreamEventParser

logger = logging.getLogger(__name__)

STREAM_ERROR_PREFIX = "⚠️ "
SESSION_ENV_VAR = "HEADLESS_AGENTS_SESSION_ID"
PROVIDER_ENV_VAR = "HEADLESS_AGENTS_MODEL_PROVIDER"
MODEL_ENV_VAR = "HEADLESS_AGENTS_MODEL_ID"


class CliAgentRunner:
    """Run one conversational turn against a registered CLI backend.

    The runner never retries.  Non-zero exits, timeouts and spawn failures
    surface as :class:`FailoverError` and the caller decides what to do next.
    Exceptions raised by the caller's own callbacks propagate unchanged.
    Staged files are released on every exit path.
    """

    def __init__(  # noqa: PLR0913
        self,
        registry: BackendRegistry,
        *,
        executor: ProcessExecutor | None = None,
        stager: ResourceStager | None = None,
        base_env: Mapping[str, str] | None = None,
        new_session_id: Callable[[], str] | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor or SubprocessExecutor()
        self._stager = stager or TempDirStager()
        self._base_env = base_env
        self._new_session_id = new_session_id

    def run(self, request: RunRequest) -> RunResult:
        started = time.monotonic()
        backend = self._registry.require(request.provider)
        descriptor = backend.descriptor
        model_label = normalize_model(request.model, descriptor)
        session = resolve_session(
            descriptor,
            request.cli_session_id,
            new_session_id=self._new_session_id,
        )

        with ExitStack() as cleanup:
            image_paths = self._stage_images(cleanup, request.images)
            extra_env = self._stage_system_prompt(cleanup, descriptor, session, request)
            extra_env.update(
                {
                    SESSION_ENV_VAR: request.session_id,
                    PROVIDER_ENV_VAR: backend.id,
                    MODEL_ENV_VAR: model_label,
                },
            )
            invocation = build_invocation(
                descriptor,
                model_id=request.model,
                session=session,
                prompt=request.prompt,
                system_prompt=request.system_prompt,
                image_paths=image_paths,
                streaming=request.callbacks.streaming,
            )
            env = build_process_env(
                descriptor,
                self._base_env if self._base_env is not None else os.environ,
                extra_env,
            )
            logger.info(
                "cli exec: provider=%s model=%s promptChars=%d resume=%s session=%s",
                backend.id,
                model_label,
                len(request.prompt),
                invocation.use_resume,
                session.session_id or "-",
            )

            parser = StreamEventParser(
                resumed=invocation.use_resume,
                session_id_fields=descriptor.session_id_fields,
            )
            dispatch = _EventDispatcher(request.callbacks)

            def on_stdout_chunk(chunk: str) -> None:
                dispatch(parser.feed(chunk))

            outcome = self._execute(
                backend,
                model_label,
                dispatch,
                ProcessRunRequest(
                    argv=invocation.argv,
                    cwd=request.workspace_dir,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdin=invocation.stdin,
                    idle_timeout_seconds=request.idle_timeout_seconds,
                    on_stdout_chunk=on_stdout_chunk,
                ),
            )
            dispatch(parser.finish())

        logger.debug("cli stdout:\n%s", outcome.stdout)
        if outcome.stderr:
            logger.debug("cli stderr:\n%s", outcome.stderr)

        if outcome.timed_out or outcome.exit_code != 0:
            raise _failover_from_exit(backend, model_label, outcome)

        return _finalize_result(
            request=request,
            backend=backend,
            model_label=model_label,
            invocation=invocation,
            parser=parser,
            outcome=outcome,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _execute(
        self,
        backend: ResolvedBackend,
        model_label: str,
        dispatch: _EventDispatcher,
        process_request: ProcessRunRequest,
    ) -> ProcessRunResult:
        try:
            return self._executor.run(process_request)
        except BackendRunError as error:
            status = FailoverStatus.RETRYABLE if error.transient else FailoverStatus.FATAL
            logger.warning("cli spawn failed: provider=%s error=%s", backend.id, error)
            raise FailoverError(
                str(error),
                reason=FailoverReason.UNKNOWN,
                status=status,
                provider=backend.id,
                model=model_label,
            ) from error
        except Exception as error:
            if error is dispatch.error:
                raise
            classification = classify_failure_text(str(error))
            logger.warning(
                "cli exec raised: provider=%s error=%r details=%s",
                backend.id,
                error,
                classification.to_event_details(provider=backend.id, model=model_label),
            )
            raise FailoverError.from_classification(
                str(error) or type(error).__name__,
                classification,
                provider=backend.id,
                model=model_label,
            ) from error

    def _stage_images(
        self,
        cleanup: ExitStack,
        images: Sequence[ImageAttachment],
    ) -> tuple[str, ...]:
        if not images:
            return ()
        staged = self._stager.stage_images(images)
        cleanup.callback(staged.release)
        return tuple(str(path) for path in staged.paths)

    def _stage_system_prompt(
        self,
        cleanup: ExitStack,
        descriptor: BackendDescriptor,
        session: SessionDecision,
        request: RunRequest,
    ) -> dict[str, str]:
        if not descriptor.system_prompt_env_var:
            return {}
        system_prompt = resolve_system_prompt_usage(descriptor, session, request.system_prompt)
        if system_prompt is None:
            return {}
        staged = self._stager.stage_system_prompt(system_prompt)
        cleanup.callback(staged.release)
        return {descriptor.system_prompt_env_var: str(staged.path)}


class _EventDispatcher:
    """Forward parsed events to the request callbacks in arrival order."""

    def __init__(self, callbacks: StreamCallbacks) -> None:
        self._callbacks = callbacks
        self.error: Exception | None = None

    def __call__(self, events: list[StreamEvent]) -> None:
        try:
            self._dispatch(events)
        except Exception as error:
            self.error = error
            raise

    def _dispatch(self, events: list[StreamEvent]) -> None:
        for event in events:
            if isinstance(event, AssistantEvent):
                if self._callbacks.on_partial_reply is not None and event.delta:
                    self._callbacks.on_partial_reply({"text": event.delta})
            elif isinstance(event, ReasoningEvent):
                if self._callbacks.on_reasoning_stream is not None and event.delta:
                    self._callbacks.on_reasoning_stream({"text": event.delta})
            if self._callbacks.on_agent_event is not None:
                self._callbacks.on_agent_event(event)


def _failover_from_exit(
    backend: ResolvedBackend,
    model_label: str,
    outcome: ProcessRunResult,
) -> FailoverError:
    classification = classify_backend_failure(
        backend_id=backend.id,
        exit_code=outcome.exit_code,
        stderr=outcome.stderr,
        stdout=outcome.stdout,
        timed_out=outcome.timed_out,
    )
    logger.warning(
        "cli exec failed: exit=%s details=%s",
        outcome.exit_code,
        classification.to_event_details(provider=backend.id, model=model_label),
    )
    message = (
        outcome.stderr.strip()
        or outcome.stdout.strip()
        or f"CLI backend {backend.id} exited with code {outcome.exit_code}"
    )
    return FailoverError.from_classification(
        message,
        classification,
        provider=backend.id,
        model=model_label,
        exit_code=outcome.exit_code,
    )


def _finalize_result(  # noqa: PLR0913
    *,
    request: RunRequest,
    backend: ResolvedBackend,
    model_label: str,
    invocation: CliInvocation,
    parser: StreamEventParser,
    outcome: ProcessRunResult,
    duration_ms: int,
) -> RunResult:
    state = parser.state
    text = state.assistant_text.strip()
    session_id = state.session_id
    usage = state.usage

    extracted = extract_cli_output(
        outcome.stdout,
        output_mode=invocation.output_mode,
        session_id_fields=backend.descriptor.session_id_fields,
        stderr=outcome.stderr,
    )
    if extracted is not None:
        text = text or extracted.text
        session_id = session_id or extracted.session_id
        usage = usage or extracted.usage

    if not text and state.errors:
        text = STREAM_ERROR_PREFIX + "\n".join(state.errors)

    return RunResult(
        text=text,
        session_id=session_id or request.session_id,
        provider=backend.id,
        model=model_label,
        duration_ms=duration_ms,
        usage=usage,
        stream_errors=tuple(state.errors),
    )
