# zlang_jit_runner.py
# MCJIT backend for zlang compilation units
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
Backend for finished zlang units, built on llvmlite's MCJIT execution engine.

Contract used by the session:
  submit(unit) -> UnitHandle   link the unit (or queue it until its imports resolve)
  lookup(name) -> int          address of a linked symbol
  release(handle)              drop the unit's module and exports

A unit links only once every imported symbol resolves to an export of a linked
unit, a runtime primitive, or a symbol of the host process. Units that
reference functions declared with `extern` but not defined yet stay pending and
are linked as soon as a later unit provides the missing definitions.
The most recently linked definition of a name wins.
"""

from __future__ import annotations
import ctypes
import logging
import os
import tempfile
from typing import Dict, List, Optional, Sequence, Tuple

from llvmlite import binding

from zlang_llvm_ir_codegen import CompiledUnit, host_target_machine
from zlang_runtime import HostRuntime, get_runtime

LOG = logging.getLogger("zlang.runner")


class JITError(RuntimeError):
    pass


class UnresolvedSymbolError(JITError, LookupError):
    pass


class UnitHandle:
    PENDING = "pending"
    LINKED = "linked"
    RELEASED = "released"

    def __init__(self, unit: CompiledUnit):
        self.unit = unit
        self.state = UnitHandle.PENDING

    @property
    def name(self) -> str:
        return self.unit.name

    def __repr__(self) -> str:
        return f"UnitHandle({self.unit.name!r}, {self.state})"


class ZlangJIT:
    """
    Runner for compilation units produced by ZlangLLVMCodegen.
    """

    def __init__(self, runtime: Optional[HostRuntime] = None, verbose: bool = False):
        self.runtime = runtime or get_runtime()
        self.runtime.install()
        self.verbose = bool(verbose)
        self.engine = self._create_execution_engine()
        self._exports: Dict[str, UnitHandle] = {}
        self._linked: List[UnitHandle] = []
        self._pending: List[UnitHandle] = []
        if self.verbose:
            LOG.setLevel(logging.DEBUG)

    # ------------------------
    # Engine lifecycle
    # ------------------------
    def _create_execution_engine(self) -> binding.ExecutionEngine:
        target = binding.Target.from_default_triple()
        # the engine takes ownership of its target machine
        target_machine = target.create_target_machine(jit=True)
        backing_mod = binding.parse_assembly("")
        engine = binding.create_mcjit_compiler(backing_mod, target_machine)
        LOG.debug("Created MCJIT engine (triple=%s)", target.triple)
        return engine

    # ------------------------
    # Symbol resolution
    # ------------------------
    def resolves(self, name: str) -> bool:
        if name in self._exports:
            return True
        if self.runtime.provides(name):
            return True
        return binding.address_of_symbol(name) is not None

    def missing_imports(self, unit: CompiledUnit) -> Tuple[str, ...]:
        return tuple(name for name in unit.imports if not self.resolves(name))

    # ------------------------
    # Submit / link
    # ------------------------
    def submit(self, unit: CompiledUnit) -> UnitHandle:
        handle = UnitHandle(unit)
        self._drop_superseded(unit)
        missing = self.missing_imports(unit)
        if missing:
            LOG.debug("unit %s pending on %s", unit.name, ", ".join(missing))
            self._pending.append(handle)
            return handle
        self._link(handle)
        self._link_pending()
        return handle

    def _link(self, handle: UnitHandle) -> None:
        mod = handle.unit.module_ref
        self.engine.add_module(mod)
        self.engine.finalize_object()
        self.engine.run_static_constructors()
        handle.state = UnitHandle.LINKED
        self._linked.append(handle)
        for name in handle.unit.exports:
            self._exports[name] = handle
        LOG.debug("Linked unit %s; exports=%s", handle.name, ", ".join(handle.unit.exports) or "-")

    def _drop_superseded(self, unit: CompiledUnit) -> None:
        # a pending unit must never link over a newer definition of its exports
        exports = set(unit.exports)
        for waiting in list(self._pending):
            if exports.intersection(waiting.unit.exports):
                self._pending.remove(waiting)
                waiting.state = UnitHandle.RELEASED
                LOG.debug("Dropped pending unit %s, superseded by %s", waiting.name, unit.name)

    def _link_pending(self) -> None:
        progress = True
        while progress:
            progress = False
            for handle in list(self._pending):
                if not self.missing_imports(handle.unit):
                    self._pending.remove(handle)
                    self._link(handle)
                    progress = True

    @property
    def pending(self) -> Tuple[UnitHandle, ...]:
        return tuple(self._pending)

    # ------------------------
    # Lookup / release
    # ------------------------
    def lookup(self, name: str) -> int:
        handle = self._exports.get(name)
        if handle is None:
            for waiting in reversed(self._pending):
                if name in waiting.unit.exports:
                    raise UnresolvedSymbolError(
                        f"'{name}' cannot run yet: unresolved external(s) "
                        f"{', '.join(self.missing_imports(waiting.unit))}")
            raise UnresolvedSymbolError(f"Symbol '{name}' not found")
        address = self.engine.get_function_address(name)
        if not address:
            raise UnresolvedSymbolError(f"Symbol '{name}' has no address")
        return address

    def release(self, handle: UnitHandle) -> None:
        if handle.state == UnitHandle.PENDING:
            if handle in self._pending:
                self._pending.remove(handle)
        elif handle.state == UnitHandle.LINKED:
            try:
                self.engine.remove_module(handle.unit.module_ref)
            except RuntimeError as e:
                raise JITError(f"failed to release unit {handle.name}: {e}") from e
            self._linked.remove(handle)
            for name in handle.unit.exports:
                if self._exports.get(name) is handle:
                    del self._exports[name]
        handle.state = UnitHandle.RELEASED
        LOG.debug("Released unit %s", handle.name)

    # ------------------------
    # Invocation helpers
    # ------------------------
    def call_function(self, name: str, args: Sequence[float] = ()) -> float:
        address = self.lookup(name)
        cfunc = ctypes.CFUNCTYPE(ctypes.c_double, *([ctypes.c_double] * len(args)))(address)
        return float(cfunc(*args))

    # ------------------------
    # AOT helpers
    # ------------------------
    def emit_assembly(self, unit: CompiledUnit, out_path: Optional[str] = None) -> str:
        if out_path is None:
            fd, out_path = tempfile.mkstemp(suffix=".s")
            os.close(fd)
        asm = host_target_machine().emit_assembly(unit.module_ref)
        with open(out_path, "w", encoding="utf-8") as fh:
            fh.write(asm)
        LOG.debug("Assembly emitted -> %s", out_path)
        return out_path

    def emit_object(self, unit: CompiledUnit, out_path: Optional[str] = None) -> str:
        if out_path is None:
            fd, out_path = tempfile.mkstemp(suffix=".o")
            os.close(fd)
        obj_bytes = host_target_machine().emit_object(unit.module_ref)
        with open(out_path, "wb") as fh:
            fh.write(obj_bytes)
        LOG.debug("Object emitted -> %s (size=%d)", out_path, len(obj_bytes))
        return out_path
