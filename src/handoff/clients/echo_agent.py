"""Local stand-in for ``droid exec -o json`` used by integration tests.

Prompt prefixes drive the behaviour:

- ``sleep:<seconds>`` waits before answering,
- ``error:<text>`` reports an error result,
- ``noise:<text>`` wraps the JSON in log lines,
- ``jsonl:<text>`` prints progress objects before the final one,
- anything else is echoed back.
"""

from __future__ import annotations

import argparse
import json
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Parse droid-style arguments and print one JSON result."""

    parser = argparse.ArgumentParser()
    parser.add_argument("command", choices=["exec"])
    parser.add_argument("-o", dest="output_format", default="json")
    parser.add_argument("--cwd", required=True)
    parser.add_argument("-s", dest="session_id")
    parser.add_argument("-m", dest="model")
    parser.add_argument("-r", dest="reasoning")
    parser.add_argument("--auto")
    parser.add_argument("--use-spec", action="store_true")
    parser.add_argument("--spec-model")
    parser.add_argument("--spec-reasoning-effort")
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    prompt: str = args.prompt
    session_id = args.session_id or "echo-session"
    document: dict[str, object] = {"session_id": session_id, "result": prompt}

    if prompt.startswith("sleep:"):
        seconds_text, _, rest = prompt.removeprefix("sleep:").partition(" ")
        time.sleep(float(seconds_text))
        document["result"] = rest or "slept"
    elif prompt.startswith("error:"):
        document = {
            "session_id": session_id,
            "is_error": True,
            "result": prompt.removeprefix("error:").strip(),
        }
        print(json.dumps(document))
        print("agent error", file=sys.stderr)
        return 1
    elif prompt.startswith("noise:"):
        document["result"] = prompt.removeprefix("noise:").strip()
        print("booting agent...")
        print(json.dumps(document), end="")
        print(" trailing log line")
        return 0
    elif prompt.startswith("jsonl:"):
        document["result"] = prompt.removeprefix("jsonl:").strip()
        print(json.dumps({"type": "progress", "text": "planning"}))
        print(json.dumps({"type": "progress", "text": "building"}))

    document["model"] = args.model
    document["cwd"] = args.cwd
    print(json.dumps(document))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
