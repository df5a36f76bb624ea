# zlangc.py
# CLI driver for the zlang language
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
zlangc: read zlang source (a file, or stdin when no file is given) and run it
through a session.

Emit modes:
 - run   JIT-compile every unit and evaluate top-level expressions (default)
 - ir    lower and optimize only, print IR traces, no execution
 - ast   parse only and print the AST of every unit
 - asm   write native assembly per unit to <output>_<unit>.s
 - obj   write a native object file per unit to <output>_<unit>.o
"""

from __future__ import annotations
import argparse
import logging
import sys
from typing import Optional, Sequence

from zlang_session import EMIT_MODES, SessionConfig, ZlangSession
from zlang_shell import PROMPT, ZlangShell

LOG = logging.getLogger("zlang.cli")


def compile_and_run(args: argparse.Namespace) -> int:
    """
    Run the session over args.file (stdin when None).
    Returns process-like exit code (0 success, 1 when a unit failed, 3 on internal error).
    """
    try:
        config = SessionConfig(opt_level=args.opt_level, verbose=args.verbose, emit=args.emit, output=args.output)
        session = ZlangSession(config)
        stdin = args.file if args.file is not None else sys.stdin
        shell = ZlangShell(session, stdin=stdin, prompt="" if args.no_prompt else PROMPT)
        shell.repl()
        for path in session.artifacts:
            LOG.info("wrote %s", path)
        return 1 if session.diagnostics else 0
    except Exception as e:
        LOG.exception("compile_and_run failed")
        print("Error:", e, file=sys.stderr)
        return 3


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="zlang JIT compiler and console")
    parser.add_argument("file", nargs="?", type=argparse.FileType("r"),
                        help="zlang source file; read from stdin when omitted")
    parser.add_argument("-o", "--output", type=str, default="program", help="Output file name prefix (asm/obj)")
    parser.add_argument("--emit", type=str, choices=list(EMIT_MODES), default="run",
                        help="run (JIT), ir, ast, asm or obj")
    parser.add_argument("-O", "--opt-level", type=int, choices=[0, 1, 2, 3], default=2,
                        help="Function pass pipeline level (0 disables it)")
    parser.add_argument("--no-prompt", action="store_true", help="Do not print the ready> prompt")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    if args.verbose:
        logging.getLogger("zlang").setLevel(logging.DEBUG)
        LOG.debug("Verbose mode enabled")
    return compile_and_run(args)


if __name__ == "__main__":
    sys.exit(main())
