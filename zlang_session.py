# zlang_session.py
# Session manager for zlang: prototype registry, unit rotation and the top-level driver
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
A ZlangSession owns the prototype registry, the code generator (and with it
the compilation unit being built) and the JIT backend.

Unit policy:
 - every `def` is lowered into the current unit, which is finished, submitted
   and replaced by a fresh unit
 - an `extern` only adds a declaration to the current unit and the registry
 - a bare expression becomes `__anon_expr` in its own unit; the unit is
   submitted, the function is called and the unit is released again

Failures are local to the top-level unit that caused them: they are written to
the diagnostic stream as "Error: <message>" and the session continues.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
import sys
from typing import Callable, Dict, Iterator, List, Optional, TextIO, Union

from zlang_ast import FunctionDef, Prototype, dump
from zlang_jit_runner import JITError, UnitHandle, ZlangJIT
from zlang_lexer import ZlangLexer
from zlang_llvm_ir_codegen import CodegenConfig, CodegenError, CompiledUnit, ZlangLLVMCodegen
from zlang_parser import ParseError, ZlangParser

LOG = logging.getLogger("zlang.session")

EMIT_MODES = ("run", "ir", "ast", "asm", "obj")


# -------------------------
# Prototype registry
# -------------------------
class PrototypeRegistry:
    """Most recent prototype per function name, for the whole session."""

    def __init__(self):
        self._protos: Dict[str, Prototype] = {}

    def register(self, proto: Prototype) -> Optional[Prototype]:
        """Record `proto` and return the entry it replaces (None if new)."""
        previous = self._protos.get(proto.name)
        if previous is not None and previous.arity != proto.arity:
            LOG.warning("redeclaring %s with %d parameter(s), previously %d",
                        proto.name, proto.arity, previous.arity)
        self._protos[proto.name] = proto
        return previous

    def restore(self, name: str, previous: Optional[Prototype]) -> None:
        if previous is None:
            self._protos.pop(name, None)
        else:
            self._protos[name] = previous

    def lookup(self, name: str) -> Optional[Prototype]:
        return self._protos.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._protos

    def __len__(self) -> int:
        return len(self._protos)

    def __iter__(self) -> Iterator[Prototype]:
        return iter(self._protos.values())


# -------------------------
# Results
# -------------------------
@dataclass
class DefinitionResult:
    proto: Prototype
    ir_text: str
    handle: Optional[UnitHandle] = None


@dataclass
class ExternResult:
    proto: Prototype
    ir_text: str


@dataclass
class EvaluationResult:
    ir_text: str
    value: Optional[float] = None


@dataclass
class ParsedResult:
    node: Union[FunctionDef, Prototype]


UnitResult = Union[DefinitionResult, ExternResult, EvaluationResult, ParsedResult]


@dataclass
class SessionConfig:
    opt_level: int = 2
    verbose: bool = False
    emit: str = "run"
    output: str = "program"

    def __post_init__(self):
        if self.emit not in EMIT_MODES:
            raise ValueError(f"unknown emit mode {self.emit!r}; expected one of {', '.join(EMIT_MODES)}")


class ZlangSession:
    def __init__(self, config: Optional[SessionConfig] = None, out: Optional[TextIO] = None,
                 backend: Optional[ZlangJIT] = None):
        self.config = config or SessionConfig()
        self.out: TextIO = out if out is not None else sys.stderr
        self.lexer = ZlangLexer()
        self.registry = PrototypeRegistry()
        self.codegen = ZlangLLVMCodegen(
            self.registry, CodegenConfig(opt_level=self.config.opt_level, verbose=self.config.verbose))
        self.backend = backend
        if self.backend is None and self.config.emit in ("run", "asm", "obj"):
            self.backend = ZlangJIT(verbose=self.config.verbose)
        if self.backend is not None:
            self.backend.runtime.stream = self.out
        self.diagnostics: List[str] = []
        self.artifacts: List[str] = []
        if self.config.verbose:
            LOG.setLevel(logging.DEBUG)

    # -------------------------
    # Unit handlers
    # -------------------------
    def handle_definition(self, node: FunctionDef) -> DefinitionResult:
        self.codegen.lower_function(node)
        unit = self.codegen.finish_unit()
        ir_text = unit.function_ir(node.proto.name)
        return DefinitionResult(node.proto, ir_text, self._submit(unit))

    def handle_extern(self, proto: Prototype) -> ExternResult:
        fn = self.codegen.lower_extern(proto)
        return ExternResult(proto, str(fn))

    def handle_expression(self, node: FunctionDef,
                          on_lowered: Optional[Callable[[EvaluationResult], None]] = None
                          ) -> EvaluationResult:
        """Lower the anonymous function into its own unit and run it.

        `on_lowered` sees the result (IR only) before the unit executes.
        """
        self.codegen.lower_function(node)
        unit = self.codegen.finish_unit()
        result = EvaluationResult(unit.function_ir(node.proto.name))
        if on_lowered is not None:
            on_lowered(result)
        result.value = self._execute(unit, node.proto.name)
        return result

    def _execute(self, unit: CompiledUnit, name: str) -> Optional[float]:
        """Submit, call and release an anonymous unit."""
        if self.config.emit != "run":
            self._submit(unit)
            return None
        handle = self.backend.submit(unit)
        try:
            self.backend.runtime.stream = self.out
            return self.backend.call_function(name)
        finally:
            self.backend.release(handle)

    def _submit(self, unit: CompiledUnit) -> Optional[UnitHandle]:
        emit = self.config.emit
        if emit == "run":
            return self.backend.submit(unit)
        if emit == "asm":
            self.artifacts.append(self.backend.emit_assembly(unit, f"{self.config.output}_{unit.name}.s"))
        elif emit == "obj":
            self.artifacts.append(self.backend.emit_object(unit, f"{self.config.output}_{unit.name}.o"))
        return None

    def dump_current_unit(self) -> str:
        return self.codegen.dump_unit()

    # -------------------------
    # Driver
    # -------------------------
    def run_units(self, parser: ZlangParser, prompt: Optional[str] = None,
                  dump_at_end: bool = False) -> List[UnitResult]:
        """Read and handle top-level units until EOF."""
        results: List[UnitResult] = []
        while True:
            if prompt:
                self._write(prompt)
            if parser.cur_tok is None:
                parser.next_token()
            tok = parser.cur_tok
            if tok.kind == 'EOF':
                break
            if tok.is_char(';'):
                parser.next_token()
                continue
            if tok.is_keyword('def'):
                result = self._run_unit(parser, parser.parse_definition, self._on_definition)
            elif tok.is_keyword('extern'):
                result = self._run_unit(parser, parser.parse_extern, self._on_extern)
            else:
                result = self._run_unit(parser, parser.parse_top_level_expr, self._on_expression)
            if result is not None:
                results.append(result)
        if dump_at_end and self.config.emit != "ast":
            self._write(self.dump_current_unit())
        return results

    def evaluate(self, source: str) -> List[UnitResult]:
        """Run every top-level unit in `source`; failures go to the diagnostic stream."""
        return self.run_units(ZlangParser(self.lexer.iter_tokens(source)))

    def run_stream(self, stream: TextIO, prompt: Optional[str] = "ready> ") -> List[UnitResult]:
        return self.run_units(ZlangParser(self.lexer.iter_stream(stream)), prompt=prompt, dump_at_end=True)

    def _run_unit(self, parser: ZlangParser, parse, handle) -> Optional[UnitResult]:
        try:
            node = parse()
        except ParseError as e:
            self._error(e)
            # skip the offending token and retry at top level
            parser.skip_token()
            return None
        try:
            return handle(node)
        except (CodegenError, JITError) as e:
            self._error(e)
            return None

    def _on_definition(self, node: FunctionDef) -> UnitResult:
        if self.config.emit == "ast":
            self._write(f"Parsed a function definition.\n{dump(node)}\n")
            return ParsedResult(node)
        result = self.handle_definition(node)
        self._write(f"Parsed a function definition:\n{result.ir_text}\n")
        return result

    def _on_extern(self, proto: Prototype) -> UnitResult:
        if self.config.emit == "ast":
            self._write(f"Parsed an extern.\n{dump(proto)}\n")
            return ParsedResult(proto)
        result = self.handle_extern(proto)
        self._write(f"Parsed an extern:\n{result.ir_text}\n")
        return result

    def _on_expression(self, node: FunctionDef) -> UnitResult:
        if self.config.emit == "ast":
            self._write(f"Parsed a top-level expr.\n{dump(node.body)}\n")
            return ParsedResult(node)
        result = self.handle_expression(
            node, on_lowered=lambda r: self._write(f"Parsed a top-level expr:\n{r.ir_text}\n"))
        if result.value is not None:
            self._write(f"Evaluated to {result.value:f}\n")
        return result

    # -------------------------
    # Diagnostics
    # -------------------------
    def _error(self, exc: Exception) -> None:
        message = str(exc)
        LOG.debug("unit failed: %s: %s", type(exc).__name__, message)
        self.diagnostics.append(message)
        self._write(f"Error: {message}\n")

    def _write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()
