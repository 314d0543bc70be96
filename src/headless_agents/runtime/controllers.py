"""Controllers for headless-agents CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from headless_agents.config import Settings
from headless_agents.runtime.backends import BackendDescriptor, BackendRegistry
from headless_agents.runtime.catalog import ModelCatalog, json_file_loader
from headless_agents.runtime.failure_classifier import FailoverError
from headless_agents.runtime.models import ImageAttachment, RunRequest, StreamCallbacks
from headless_agents.runtime.runner import CliAgentRunner


@dataclass(slots=True)
class BackendShowCommand:
    """CLI input for descriptor inspection."""

    backend_id: str


@dataclass(slots=True)
class RunCommand:
    """CLI input for one conversational turn."""

    backend_id: str | None
    model: str | None
    session_id: str
    resume_session: str | None
    system_prompt: str
    image_paths: tuple[Path, ...]
    stream: bool
    prompt: str
    timeout_seconds: float | None = None


@dataclass(slots=True)
class ModelsCommand:
    """CLI input for model catalog listing."""

    provider: str | None


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI plus the exit disposition."""

    lines: list[str]
    success: bool


class HeadlessAgentsCliController:
    """Coordinates registry inspection, runs and catalog listing."""

    def list_backends(self) -> list[str]:
        settings = Settings.from_env()
        registry = BackendRegistry(settings.backend_overrides())
        lines = ["CLI backends:"]
        for backend_id in registry.ids():
            resolved = registry.resolve(backend_id)
            if resolved is None:
                lines.append(f"  {backend_id} (disabled)")
                continue
            descriptor = resolved.descriptor
            marker = " *" if backend_id == settings.default_backend else ""
            lines.append(
                f"  {backend_id}{marker} command={descriptor.command} "
                f"output={descriptor.output.value} session_mode={descriptor.session_mode.value} "
                f"serialize={'yes' if descriptor.serialize else 'no'}",
            )
        return lines

    def show_backend(self, command: BackendShowCommand) -> CommandResult:
        settings = Settings.from_env()
        resolved = BackendRegistry(settings.backend_overrides()).resolve(command.backend_id)
        if resolved is None:
            return CommandResult(
                lines=[f"Unknown CLI backend: {command.backend_id}"],
                success=False,
            )
        return CommandResult(
            lines=[f"Backend: {resolved.id}", *_descriptor_lines(resolved.descriptor)],
            success=True,
        )

    def run(
        self,
        command: RunCommand,
        *,
        on_delta: Callable[[str], None] | None = None,
    ) -> CommandResult:
        settings = Settings.from_env()
        settings.validate()
        runner = CliAgentRunner(BackendRegistry(settings.backend_overrides()))
        callbacks = StreamCallbacks()
        if command.stream and on_delta is not None:
            callbacks = StreamCallbacks(
                on_partial_reply=lambda payload: on_delta(str(payload.get("text", ""))),
            )

        request = RunRequest(
            session_id=command.session_id,
            provider=command.backend_id or settings.default_backend,
            prompt=command.prompt,
            workspace_dir=settings.workspace_dir,
            timeout_seconds=command.timeout_seconds or settings.timeout_seconds,
            model=command.model,
            cli_session_id=command.resume_session,
            system_prompt=command.system_prompt,
            images=tuple(ImageAttachment.from_path(path) for path in command.image_paths),
            idle_timeout_seconds=settings.idle_timeout_seconds,
            callbacks=callbacks,
        )
        try:
            result = runner.run(request)
        except FailoverError as error:
            return CommandResult(
                lines=[
                    "Run failed: "
                    f"provider={error.provider} model={error.model} "
                    f"reason={error.reason.value} status={error.status.value} "
                    f"exit_code={error.exit_code if error.exit_code is not None else '-'}",
                    f"  {error}",
                ],
                success=False,
            )

        lines: list[str] = [] if command.stream else [result.text]
        usage = result.usage.to_dict() if result.usage is not None else {}
        usage_text = " ".join(f"{key}={value}" for key, value in usage.items()) or "-"
        lines.extend(
            [
                "",
                "Run summary: "
                f"provider={result.provider} model={result.model} "
                f"session_id={result.session_id} duration_ms={result.duration_ms}",
                f"Usage: {usage_text}",
            ],
        )
        return CommandResult(lines=lines, success=True)

    def models(self, command: ModelsCommand) -> list[str]:
        settings = Settings.from_env()
        entries = ModelCatalog(loader=json_file_loader(settings.models_file)).load()
        if command.provider:
            wanted = command.provider.strip().lower()
            entries = [entry for entry in entries if entry.provider.lower() == wanted]
        if not entries:
            return ["No models found."]

        lines = ["Models:"]
        for entry in entries:
            context = entry.context_window if entry.context_window is not None else "-"
            vision = "yes" if entry.input is not None and "image" in entry.input else "no"
            lines.append(
                f"  {entry.provider}/{entry.id} name={entry.name!r} "
                f"context_window={context} vision={vision}",
            )
        return lines


def _descriptor_lines(descriptor: BackendDescriptor) -> list[str]:
    def fmt(value: object) -> str:
        if value is None:
            return "-"
        if isinstance(value, tuple):
            return " ".join(value) if value else "-"
        if isinstance(value, dict):
            return ", ".join(f"{key}={item}" for key, item in value.items()) or "-"
        if isinstance(value, bool):
            return "yes" if value else "no"
        return str(getattr(value, "value", value))

    return [
        f"  command={descriptor.command}",
        f"  args={fmt(descriptor.args)}",
        f"  streaming_args={fmt(descriptor.streaming_args)}",
        f"  resume_args={fmt(descriptor.resume_args)}",
        f"  output={fmt(descriptor.output)} resume_output={fmt(descriptor.resume_output)}",
        f"  input={fmt(descriptor.input)} "
        f"max_prompt_arg_chars={fmt(descriptor.max_prompt_arg_chars)}",
        f"  prompt_arg={fmt(descriptor.prompt_arg)} model_arg={fmt(descriptor.model_arg)}",
        f"  session_mode={fmt(descriptor.session_mode)} session_arg={fmt(descriptor.session_arg)}",
        f"  session_id_fields={fmt(descriptor.session_id_fields)}",
        f"  system_prompt_arg={fmt(descriptor.system_prompt_arg)} "
        f"system_prompt_env_var={fmt(descriptor.system_prompt_env_var)}",
        f"  system_prompt_mode={fmt(descriptor.system_prompt_mode)} "
        f"system_prompt_when={fmt(descriptor.system_prompt_when)}",
        f"  image_arg={fmt(descriptor.image_arg)} image_mode={fmt(descriptor.image_mode)}",
        f"  env={fmt(descriptor.env)}",
        f"  clear_env={fmt(descriptor.clear_env)}",
        f"  model_aliases={len(descriptor.model_aliases)}",
        f"  serialize={fmt(descriptor.serialize)}",
    ]
