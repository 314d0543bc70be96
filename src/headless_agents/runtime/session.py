"""Session continuity: decide between resuming and starting a fresh session."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from headless_agents.runtime.backends import BackendDescriptor
from headless_agents.runtime.models import SessionMode


@dataclass(slots=True, frozen=True)
class SessionDecision:
    """Outcome of the continuity check.

    ``use_resume`` is the single predicate the argument builder consults when
    choosing between the resume template and the new-session templates.
    """

    session_id: str | None
    is_new: bool
    use_resume: bool


def resolve_session(
    descriptor: BackendDescriptor,
    prior_session_id: str | None,
    *,
    new_session_id: Callable[[], str] | None = None,
) -> SessionDecision:
    """Decide which session id to send, if any, for this run."""

    existing = (prior_session_id or "").strip() or None
    mode = descriptor.session_mode

    if mode is SessionMode.NONE:
        return SessionDecision(session_id=None, is_new=True, use_resume=False)

    if existing is None:
        if mode is SessionMode.ALWAYS:
            generate = new_session_id or _random_session_id
            return SessionDecision(session_id=generate(), is_new=True, use_resume=False)
        return SessionDecision(session_id=None, is_new=True, use_resume=False)

    return SessionDecision(
        session_id=existing,
        is_new=False,
        use_resume=bool(descriptor.resume_args),
    )


def _random_session_id() -> str:
    return str(uuid4())
