"""CLI entrypoint for headless-agents."""

import logging
from pathlib import Path

import rich_click as click

from headless_agents import __version__
from headless_agents.runtime.controllers import (
    BackendShowCommand,
    HeadlessAgentsCliController,
    ModelsCommand,
    RunCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = HeadlessAgentsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="headless-agents")
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
def headless_agents(verbose: bool) -> None:
    """Drive external CLI assistants through one session protocol."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@headless_agents.group()
def backends() -> None:
    """Backend registry commands."""


@backends.command("list")
def backends_list() -> None:
    """List built-in and configured CLI backends (* marks the default)."""

    try:
        _emit_lines(CONTROLLER.list_backends())
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@backends.command("show")
@click.argument("backend_id")
def backends_show(backend_id: str) -> None:
    """Show the merged descriptor for one backend."""

    try:
        result = CONTROLLER.show_backend(BackendShowCommand(backend_id=backend_id))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Backend {backend_id!r} is unknown or disabled.")


@headless_agents.command("run")
@click.option(
    "--backend",
    "backend_id",
    default=None,
    help="Backend id. If omitted, HEADLESS_AGENTS_DEFAULT_BACKEND is used.",
)
@click.option("--model", default=None, help="Model id or alias.")
@click.option(
    "--session-id",
    default="cli",
    show_default=True,
    help="Caller-side session id, returned when the backend reports none.",
)
@click.option(
    "--resume-session",
    default=None,
    help="Backend session id from a previous run to resume.",
)
@click.option("--system-prompt", default="", help="System prompt text.")
@click.option(
    "--image",
    "image_paths",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Image attachment. Can be repeated.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Total run timeout. If omitted, HEADLESS_AGENTS_TIMEOUT_SECONDS is used.",
)
@click.option("--stream", is_flag=True, help="Print assistant text as it arrives.")
@click.argument("prompt")
def run(  # noqa: PLR0913
    backend_id: str | None,
    model: str | None,
    session_id: str,
    resume_session: str | None,
    system_prompt: str,
    image_paths: tuple[Path, ...],
    timeout_seconds: float | None,
    stream: bool,
    prompt: str,
) -> None:
    """Run one prompt against a CLI backend and print the reply."""

    try:
        result = CONTROLLER.run(
            RunCommand(
                backend_id=backend_id,
                model=model,
                session_id=session_id,
                resume_session=resume_session,
                system_prompt=system_prompt,
                image_paths=image_paths,
                stream=stream,
                prompt=prompt,
                timeout_seconds=timeout_seconds,
            ),
            on_delta=lambda text: click.echo(text, nl=False),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("CLI backend run failed.")


@headless_agents.command("models")
@click.option("--provider", default=None, help="Only list models of this provider.")
def models(provider: str | None) -> None:
    """List the model catalog."""

    _emit_lines(CONTROLLER.models(ModelsCommand(provider=provider)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    headless_agents()
