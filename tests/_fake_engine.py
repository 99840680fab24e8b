"""Minimal engine CLI for testing.  Run with: python tests/_fake_engine.py [--hang] [DB]

Understands the dot commands sqlblocks sends (``.output``, ``.print``,
``.echo``, ``.bail``, ``.quit``; the rest are accepted and ignored) and a
handful of statements:

    emit N;      N rows in an ascii table on the current output
    echo TEXT;   TEXT on the current output
    warn TEXT;   "Warning: TEXT" on stderr
    fail TEXT;   "Parser Error: TEXT" on stderr, exit 1 when .bail is on
    sleep S;     block for S seconds
    progress;    progress-bar fragments on stderr
    exit N;      exit immediately with code N

``--hang`` ignores ``.print`` so a session never becomes ready.

Like the real CLIs reading a piped stdin, SIGINT ends the process with exit
code 1; an interrupted ``sleep`` reports "Error: Interrupted" first.
"""

from __future__ import annotations

import sys
import time


def _unquote(arg: str) -> str:
    arg = arg.strip()
    if len(arg) >= 2 and arg[0] == arg[-1] == "'":
        return arg[1:-1]
    if len(arg) >= 2 and arg[0] == arg[-1] == '"':
        return arg[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return arg


class FakeEngine:
    def __init__(self, hang: bool) -> None:
        self.hang = hang
        self.out = sys.stdout
        self.bail = False
        self.echo = False

    def write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def warn(self, text: str) -> None:
        sys.stdout.flush()
        sys.stderr.write(text + "\n")
        sys.stderr.flush()

    def dot(self, line: str) -> None:
        command, _, arg = line.partition(" ")
        if command == ".output":
            if self.out is not sys.stdout:
                self.out.close()
            self.out = open(_unquote(arg), "w") if arg.strip() else sys.stdout  # noqa: SIM115
        elif command == ".print":
            if not self.hang:
                self.write(arg + "\n")
        elif command == ".bail":
            self.bail = arg.strip() == "on"
        elif command == ".echo":
            self.echo = arg.strip() == "on"
        elif command in (".quit", ".exit"):
            sys.exit(int(arg) if arg.strip() else 0)

    def statement(self, text: str) -> None:
        verb, _, arg = text.partition(" ")
        arg = arg.strip()
        if verb == "emit":
            rule = "+---+"
            lines = [rule, "| n |", rule, *(f"| {i} |" for i in range(1, int(arg) + 1)), rule]
            self.write("\n".join(lines) + "\n")
        elif verb == "echo":
            self.write(arg + "\n")
        elif verb == "warn":
            self.warn(f"Warning: {arg}")
        elif verb == "fail":
            self.warn(f"Parser Error: {arg}")
            if self.bail:
                sys.exit(1)
        elif verb == "sleep":
            try:
                time.sleep(float(arg))
            except KeyboardInterrupt:
                self.warn("Error: Interrupted")
                raise
        elif verb == "progress":
            for percent in (10, 50):
                filled = percent // 10
                sys.stderr.write(f"\r {percent}% ▕{'█' * filled}{' ' * (10 - filled)}▏")
                sys.stderr.flush()
                time.sleep(0.02)
            sys.stderr.write("\r 100% ▕██████████▏\n")
            sys.stderr.flush()
        elif verb == "exit":
            sys.exit(int(arg or 0))
        else:
            self.warn(f'Parser Error: syntax error at or near "{verb}"')

    def run(self) -> None:
        pending: list[str] = []
        while True:
            raw = sys.stdin.readline()
            if not raw:
                return
            line = raw.strip()
            if not line:
                continue
            if self.echo:
                self.write(line + "\n")
            if not pending and line.startswith("."):
                self.dot(line)
                continue
            pending.append(line)
            if line.endswith(";"):
                for part in " ".join(pending).split(";"):
                    if part.strip():
                        self.statement(part.strip())
                pending = []


if __name__ == "__main__":
    try:
        FakeEngine(hang="--hang" in sys.argv[1:]).run()
    except KeyboardInterrupt:
        sys.exit(1)
