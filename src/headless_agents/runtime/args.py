"""Argument, prompt and environment building for backend invocations."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from headless_agents.runtime.backends import SESSION_ID_PLACEHOLDER, BackendDescriptor
from headless_agents.runtime.models import ImageMode, InputMode, OutputMode, SystemPromptWhen
from headless_agents.runtime.session import SessionDecision

DEFAULT_MODEL_ID = "default"


@dataclass(slots=True, frozen=True)
class PromptInput:
    """Where the prompt goes: a trailing argument or the process stdin."""

    args_prompt: str | None
    stdin: str | None


@dataclass(slots=True, frozen=True)
class CliInvocation:
    """Concrete command line for one run."""

    argv: tuple[str, ...]
    stdin: str | None
    output_mode: OutputMode
    use_resume: bool


def normalize_model(model_id: str | None, descriptor: BackendDescriptor) -> str:
    """Map an alias to its canonical id; unknown ids pass through unchanged."""

    trimmed = (model_id or "").strip() or DEFAULT_MODEL_ID
    return descriptor.model_aliases.get(trimmed, trimmed)


def substitute_session_id(template: Sequence[str], session_id: str) -> tuple[str, ...]:
    return tuple(arg.replace(SESSION_ID_PLACEHOLDER, session_id) for arg in template)


def select_base_args(
    descriptor: BackendDescriptor,
    session: SessionDecision,
    *,
    streaming: bool,
) -> tuple[str, ...]:
    """Pick the resume, streaming or default template, in that precedence."""

    if session.use_resume and session.session_id and descriptor.resume_args:
        return substitute_session_id(descriptor.resume_args, session.session_id)
    if streaming and descriptor.streaming_args:
        return descriptor.streaming_args
    return descriptor.args


def resolve_output_mode(descriptor: BackendDescriptor, session: SessionDecision) -> OutputMode:
    if session.use_resume and descriptor.resume_output is not None:
        return descriptor.resume_output
    return descriptor.output


def resolve_prompt_input(descriptor: BackendDescriptor, prompt: str) -> PromptInput:
    if descriptor.input is InputMode.STDIN:
        return PromptInput(args_prompt=None, stdin=prompt)
    limit = descriptor.max_prompt_arg_chars
    if limit is not None and len(prompt) > limit:
        return PromptInput(args_prompt=None, stdin=prompt)
    return PromptInput(args_prompt=prompt, stdin=None)


def resolve_system_prompt_usage(
    descriptor: BackendDescriptor,
    session: SessionDecision,
    system_prompt: str,
) -> str | None:
    """Return the system prompt to deliver on this turn, or ``None``.

    ``first`` sends it only when the session is new; resumed sessions already
    carry it in their history.
    """

    stripped = system_prompt.strip()
    if not stripped:
        return None
    if not descriptor.system_prompt_arg and not descriptor.system_prompt_env_var:
        return None
    when = descriptor.system_prompt_when
    if when is SystemPromptWhen.NEVER:
        return None
    if when is SystemPromptWhen.FIRST and not session.is_new:
        return None
    return stripped


def append_image_paths(prompt: str, image_paths: Sequence[str]) -> str:
    """Mention staged images in the prompt for backends without an image flag."""

    if not image_paths:
        return prompt
    listing = "\n".join(image_paths)
    return f"{prompt}\n\n{listing}" if prompt else listing


def build_cli_args(  # noqa: PLR0913
    descriptor: BackendDescriptor,
    *,
    base_args: Sequence[str],
    model_id: str | None,
    session: SessionDecision,
    system_prompt: str | None = None,
    image_paths: Sequence[str] = (),
    prompt_arg: str | None = None,
) -> list[str]:
    """Assemble argv after the executable.

    Order: base template, model, session, system prompt, images, prompt.
    """

    args = list(base_args)
    if descriptor.model_arg and model_id:
        args.extend((descriptor.model_arg, model_id))

    if session.session_id and not session.use_resume:
        if descriptor.session_args:
            args.extend(substitute_session_id(descriptor.session_args, session.session_id))
        elif descriptor.session_arg:
            args.extend((descriptor.session_arg, session.session_id))

    if system_prompt and descriptor.system_prompt_arg:
        args.extend((descriptor.system_prompt_arg, system_prompt))

    if image_paths and descriptor.image_arg:
        if descriptor.image_mode is ImageMode.LIST:
            args.extend((descriptor.image_arg, ",".join(image_paths)))
        else:
            for path in image_paths:
                args.extend((descriptor.image_arg, path))

    if prompt_arg is not None:
        if descriptor.prompt_arg:
            args.append(descriptor.prompt_arg)
        args.append(prompt_arg)
    return args


def build_invocation(  # noqa: PLR0913
    descriptor: BackendDescriptor,
    *,
    model_id: str | None,
    session: SessionDecision,
    prompt: str,
    system_prompt: str = "",
    image_paths: Sequence[str] = (),
    streaming: bool = False,
) -> CliInvocation:
    """Resolve aliases, templates and prompt delivery into one invocation."""

    if image_paths and not descriptor.image_arg:
        prompt = append_image_paths(prompt, image_paths)
    prompt_input = resolve_prompt_input(descriptor, prompt)
    requested_model = (model_id or "").strip()
    args = build_cli_args(
        descriptor,
        base_args=select_base_args(descriptor, session, streaming=streaming),
        model_id=normalize_model(requested_model, descriptor) if requested_model else None,
        session=session,
        system_prompt=resolve_system_prompt_usage(descriptor, session, system_prompt),
        image_paths=image_paths,
        prompt_arg=prompt_input.args_prompt,
    )
    return CliInvocation(
        argv=(descriptor.command, *args),
        stdin=prompt_input.stdin,
        output_mode=resolve_output_mode(descriptor, session),
        use_resume=session.use_resume,
    )


def build_process_env(
    descriptor: BackendDescriptor,
    base_env: Mapping[str, str],
    extra: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Overlay descriptor env and run extras, then strip ``clear_env`` keys."""

    env = dict(base_env)
    env.update(descriptor.env)
    if extra:
        env.update(extra)
    for key in descriptor.clear_env:
        env.pop(key, None)
    return env
