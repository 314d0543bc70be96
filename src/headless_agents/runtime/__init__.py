"""Runtime for driving external CLI assistants through one session protocol.

Why not wrap each CLI in its own client?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The assistants (claude, codex, gemini) differ in every integration detail
that matters to a caller: flag syntax, output encoding (one JSON document,
JSON lines, plain text), how a previous conversation is resumed, and how
failures are reported (dedicated exit codes for some, generic ``1`` and
stderr wording for others).  This package keeps those differences in data:

- Backend descriptors with a deterministic defaults + overrides merge.
- One argument builder driven by the descriptor and the session decision.
- One incremental JSON-lines parser producing typed stream events.
- One failure classifier that turns exit codes and error text into a
  portable failover reason and retry disposition.

Process spawning and temporary file staging are collaborators behind small
protocols so the core stays testable without real CLIs installed.
"""
