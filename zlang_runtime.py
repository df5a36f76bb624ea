# zlang_runtime.py
# Host runtime primitives callable from JIT-compiled zlang code
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
Runtime primitives exposed to zlang programs as C-callable `double(double)`:

  putchard(x)  write the character with code (int)x to the output stream, return 0.0
  printd(x)    write x formatted with %f and a newline, return 0.0

Both write to HostRuntime.stream, which the session points at its diagnostic
stream. Symbols are process-global, so there is a single runtime instance.
"""

from __future__ import annotations
import ctypes
import logging
import math
import sys
from typing import Dict, Optional, TextIO

from llvmlite import binding

LOG = logging.getLogger("zlang.runtime")

PRIMITIVE_TYPE = ctypes.CFUNCTYPE(ctypes.c_double, ctypes.c_double)


class HostRuntime:
    def __init__(self, stream: Optional[TextIO] = None):
        self.stream: TextIO = stream if stream is not None else sys.stderr
        self._installed = False
        # keep the ctypes thunks alive for as long as JIT code may call them
        self._callbacks: Dict[str, PRIMITIVE_TYPE] = {
            "putchard": PRIMITIVE_TYPE(self.putchard),
            "printd": PRIMITIVE_TYPE(self.printd),
        }

    def putchard(self, x: float) -> float:
        code = int(x) & 0xFF if math.isfinite(x) else 0
        self.stream.write(chr(code))
        self.stream.flush()
        return 0.0

    def printd(self, x: float) -> float:
        self.stream.write(f"{x:f}\n")
        self.stream.flush()
        return 0.0

    @property
    def symbols(self) -> Dict[str, int]:
        return {name: ctypes.cast(cb, ctypes.c_void_p).value for name, cb in self._callbacks.items()}

    def install(self) -> None:
        """Register the primitives with the JIT symbol table (once per process)."""
        if self._installed:
            return
        for name, address in self.symbols.items():
            binding.add_symbol(name, address)
            LOG.debug("registered runtime symbol %s at 0x%x", name, address)
        self._installed = True

    def provides(self, name: str) -> bool:
        return name in self._callbacks


_RUNTIME: Optional[HostRuntime] = None


def get_runtime() -> HostRuntime:
    global _RUNTIME
    if _RUNTIME is None:
        _RUNTIME = HostRuntime()
        _RUNTIME.install()
    return _RUNTIME
