"""Local demo agent speaking the stream-json protocol, for integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from uuid import uuid4

FAIL_ENV_VAR = "HEADLESS_AGENTS_ECHO_FAIL"
SYSTEM_PROMPT_ENV_VAR = "GEMINI_SYSTEM_MD"


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back as a JSON-lines event stream."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--yolo", action="store_true")
    parser.add_argument("--resume", default=None)
    parser.add_argument("-m", "--model", default="echo-1")
    parser.add_argument("-p", "--prompt", default=None)
    args = parser.parse_args(argv)

    failure = os.getenv(FAIL_ENV_VAR, "").strip()
    if failure:
        code, _, message = failure.partition(":")
        sys.stderr.write(f"{message or 'echo agent failure'}\n")
        return int(code)

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    session_id = args.resume or str(uuid4())
    _emit({"type": "init", "session_id": session_id, "model": args.model})

    system_prompt_path = os.getenv(SYSTEM_PROMPT_ENV_VAR)
    if system_prompt_path:
        chars = len(Path(system_prompt_path).read_text("utf-8"))
        _emit({"type": "event", "stream": "system_prompt", "data": {"chars": chars}})

    _emit({"type": "thinking", "content": "Echoing the prompt."})
    words = f"echo: {prompt.strip()}".split(" ")
    for index, word in enumerate(words):
        suffix = " " if index < len(words) - 1 else ""
        _emit({"type": "message", "role": "assistant", "content": word + suffix, "delta": True})
    _emit(
        {
            "type": "result",
            "status": "success",
            "stats": {
                "input_tokens": len(prompt.split()),
                "output_tokens": len(words),
                "total_tokens": len(prompt.split()) + len(words),
                "duration_ms": 1,
                "tool_calls": 0,
            },
        },
    )
    return 0


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
