# zlang_shell.py
# Interactive read-eval-print console for zlang
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
Console driver around ZlangSession.

Source lines are handed to the session's lexer one at a time; lines that start
with ':' are shell commands and never reach the parser:

  :help        list commands
  :ir          show the compilation unit being built
  :protos      list the known function prototypes
  :quit        end the session (same as end of input)
"""

from __future__ import annotations
import logging
import sys
from typing import List, Optional, TextIO

from zlang_session import SessionConfig, UnitResult, ZlangSession

LOG = logging.getLogger("zlang.shell")

PROMPT = "ready> "


class ZlangShell:
    def __init__(self, session: Optional[ZlangSession] = None, stdin: Optional[TextIO] = None,
                 prompt: str = PROMPT):
        self.session = session or ZlangSession(SessionConfig())
        self.stdin: TextIO = stdin if stdin is not None else sys.stdin
        self.prompt = prompt
        self._done = False

    # ----- stream protocol used by the lexer -----
    def readline(self) -> str:
        while not self._done:
            line = self.stdin.readline()
            if not line:
                return ""
            stripped = line.strip()
            if not stripped.startswith(":"):
                return line
            self.dispatch(stripped)
            if not self._done:
                self.session.out.write(self.prompt)
                self.session.out.flush()
        return ""

    def dispatch(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0][1:]
        method = getattr(self, f"cmd_{cmd}", None)
        if method is None:
            self._print(f"Unknown command: {cmd}. Type :help")
            return
        method(parts[1:])

    # ----- REPL -----
    def repl(self) -> List[UnitResult]:
        LOG.debug("starting console (emit=%s)", self.session.config.emit)
        return self.session.run_stream(self, prompt=self.prompt)

    # ----- commands -----
    def cmd_help(self, _args):
        """list commands"""
        self._print("Commands:")
        for name in sorted(n[4:] for n in dir(self) if n.startswith("cmd_")):
            doc = (getattr(self, f"cmd_{name}").__doc__ or "").strip()
            self._print(f"  :{name:<8} {doc}")

    def cmd_ir(self, _args):
        """show the unit being built"""
        self._print(self.session.dump_current_unit())

    def cmd_protos(self, _args):
        """list known prototypes"""
        for proto in self.session.registry:
            self._print(f"  {proto}")

    def cmd_quit(self, _args):
        """end the session"""
        self._done = True

    def _print(self, text: str) -> None:
        self.session.out.write(text + "\n")
        self.session.out.flush()


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    ZlangShell().repl()
    return 0


if __name__ == "__main__":
    sys.exit(main())
