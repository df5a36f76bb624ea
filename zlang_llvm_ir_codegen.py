# zlang_llvm_ir_codegen.py
# LLVM IR Code Generator for zlang
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
Lowers zlang AST into LLVM SSA form with llvmlite.ir.

One ir.Module ("unit") holds the current top-level unit only. finish_unit()
verifies and optimizes it, hands back a CompiledUnit for the backend and
starts a fresh unit. Calls into functions from earlier units are resolved
through the prototype registry, which emits a body-less declaration into the
current unit.

Every _eval_* method returns (value, block): the SSA value and the basic block
in which lowering of that node ended.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import lru_cache
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from llvmlite import ir, binding

from zlang_ast import Expr, FunctionDef, Prototype

LOG = logging.getLogger("zlang.codegen")

# Native target for module triples, data layout and the JIT
binding.initialize_native_target()
binding.initialize_native_asmprinter()

DOUBLE = ir.DoubleType()


@lru_cache(maxsize=1)
def host_target_machine() -> binding.TargetMachine:
    target = binding.Target.from_default_triple()
    return target.create_target_machine(jit=True)


def release_global_name(module: ir.Module, name: str) -> None:
    """Let `name` be declared again in `module` without a ".1" suffix."""
    # ir.NameScope has no public unregister; _useset checked against llvmlite 0.50
    module.scope._useset.discard(name)


@dataclass
class CodegenConfig:
    opt_level: int = 2
    verbose: bool = False


# -------------------------
# Errors
# -------------------------
class CodegenError(Exception):
    """Lowering failed; the unit being lowered is left as it was before."""


class UnknownVariableError(CodegenError, NameError):
    pass


class UnknownFunctionError(CodegenError, NameError):
    pass


class ArityError(CodegenError):
    pass


class InvalidOperatorError(CodegenError):
    pass


class RedefinitionError(CodegenError):
    pass


# -------------------------
# Variable bindings
# -------------------------
class BindingScope:
    """Name -> stack of SSA values; the top of each stack is the visible binding."""

    def __init__(self):
        self._bindings: Dict[str, List[ir.Value]] = {}

    def reset(self, bindings: Iterable[Tuple[str, ir.Value]] = ()) -> None:
        self._bindings.clear()
        for name, value in bindings:
            self.push(name, value)

    def lookup(self, name: str) -> Optional[ir.Value]:
        stack = self._bindings.get(name)
        return stack[-1] if stack else None

    def push(self, name: str, value: ir.Value) -> None:
        self._bindings.setdefault(name, []).append(value)

    def pop(self, name: str) -> None:
        stack = self._bindings[name]
        stack.pop()
        if not stack:
            del self._bindings[name]

    @contextmanager
    def bound(self, name: str, value: ir.Value) -> Iterator[None]:
        self.push(name, value)
        try:
            yield
        finally:
            self.pop(name)

    def __contains__(self, name: str) -> bool:
        return name in self._bindings


@dataclass
class CompiledUnit:
    name: str
    module_ref: binding.ModuleRef
    imports: Tuple[str, ...] = ()
    exports: Tuple[str, ...] = ()
    ir_text: str = field(default="", repr=False)

    def function_ir(self, name: str) -> str:
        return str(self.module_ref.get_function(name))


class ZlangLLVMCodegen:
    def __init__(self, registry, config: Optional[CodegenConfig] = None):
        self.config = config or CodegenConfig()
        self.registry = registry
        self.module: Optional[ir.Module] = None
        self.builder: Optional[ir.IRBuilder] = None
        self.scope = BindingScope()
        self._unit_count = 0
        if self.config.verbose:
            LOG.setLevel(logging.DEBUG)
        self.new_unit()

    # -------------------------
    # Unit lifecycle
    # -------------------------
    def new_unit(self) -> ir.Module:
        self._unit_count += 1
        self.module = ir.Module(name=f"zlang_unit_{self._unit_count}")
        self.module.triple = binding.get_default_triple()
        self.module.data_layout = str(host_target_machine().target_data)
        LOG.debug("created unit %s", self.module.name)
        return self.module

    def dump_unit(self) -> str:
        return str(self.module)

    def finish_unit(self) -> CompiledUnit:
        """Verify and optimize the current unit, then rotate to a fresh one."""
        module = self.module
        llvm_ir = str(module)
        mod_ref = binding.parse_assembly(llvm_ir)
        mod_ref.name = module.name
        mod_ref.verify()
        if self.config.opt_level > 0:
            self._optimize(mod_ref)
        unit = CompiledUnit(
            name=module.name,
            module_ref=mod_ref,
            imports=self._called_declarations(module),
            exports=tuple(f.name for f in module.functions if not f.is_declaration),
            ir_text=llvm_ir,
        )
        LOG.debug("finished unit %s (imports=%s, exports=%s)", unit.name, unit.imports, unit.exports)
        self.new_unit()
        return unit

    def _optimize(self, mod_ref: binding.ModuleRef) -> None:
        pto = binding.create_pipeline_tuning_options(speed_level=max(0, min(3, int(self.config.opt_level))))
        pb = binding.create_pass_builder(host_target_machine(), pto)
        fpm = binding.create_new_function_pass_manager()
        fpm.add_instruction_combine_pass()
        fpm.add_reassociate_pass()
        fpm.add_new_gvn_pass()
        fpm.add_simplify_cfg_pass()
        for fn in mod_ref.functions:
            if not fn.is_declaration:
                fpm.run(fn, pb)

    @staticmethod
    def _called_declarations(module: ir.Module) -> Tuple[str, ...]:
        called: List[str] = []
        for fn in module.functions:
            for block in fn.blocks:
                for instr in block.instructions:
                    if isinstance(instr, ir.CallInstr) and instr.callee.is_declaration \
                            and instr.callee.name not in called:
                        called.append(instr.callee.name)
        return tuple(called)

    # -------------------------
    # Functions
    # -------------------------
    def get_function(self, name: str) -> Optional[ir.Function]:
        fn = self.module.globals.get(name)
        if isinstance(fn, ir.Function):
            return fn
        proto = self.registry.lookup(name)
        if proto is not None:
            return self.lower_prototype(proto)
        return None

    def lower_prototype(self, proto: Prototype) -> ir.Function:
        """Declare `double name(double, ...)` in the current unit, reusing a matching declaration."""
        existing = self.module.globals.get(proto.name)
        if existing is not None:
            if not isinstance(existing, ir.Function) or not existing.is_declaration:
                raise RedefinitionError(f"Function '{proto.name}' is already defined in this unit")
            if len(existing.args) == proto.arity:
                return existing
            self._erase(existing)
        return self._declare(proto)

    def _declare(self, proto: Prototype) -> ir.Function:
        fnty = ir.FunctionType(DOUBLE, [DOUBLE] * proto.arity)
        fn = ir.Function(self.module, fnty, name=proto.name)
        for arg, pname in zip(fn.args, proto.params):
            arg.name = pname
        return fn

    def _erase(self, fn: ir.Function) -> None:
        del self.module.globals[fn.name]
        release_global_name(self.module, fn.name)

    def lower_extern(self, proto: Prototype) -> ir.Function:
        fn = self.lower_prototype(proto)
        self.registry.register(proto)
        return fn

    def lower_function(self, node: FunctionDef) -> ir.Function:
        """
        Lower a definition all-or-nothing: on failure the function is removed
        from the unit and the registry entry is put back.
        """
        proto = node.proto
        previous = None if proto.is_anonymous else self.registry.register(proto)
        fn = None
        try:
            existing = self.module.globals.get(proto.name)
            if existing is not None:
                if not isinstance(existing, ir.Function) or not existing.is_declaration:
                    raise RedefinitionError(f"Function '{proto.name}' is already defined in this unit")
                self._erase(existing)
            fn = self._declare(proto)
            self.builder = ir.IRBuilder(fn.append_basic_block('entry'))
            self.scope.reset(zip(proto.params, fn.args))
            value, _ = self._eval_node(node.body)
            self.builder.ret(value)
        except CodegenError:
            if fn is not None:
                self._erase(fn)
            if not proto.is_anonymous:
                self.registry.restore(proto.name, previous)
            raise
        finally:
            self.builder = None
            self.scope.reset()
        LOG.debug("lowered %s into %s", proto, self.module.name)
        return fn

    # -------------------------
    # Expressions
    # -------------------------
    def _eval_node(self, node: Expr) -> Tuple[ir.Value, ir.Block]:
        method = getattr(self, f'_eval_{node.node_type}', self._eval_unknown)
        return method(node)

    def _eval_unknown(self, node):
        raise CodegenError(f"No codegen for node type {getattr(node, 'node_type', type(node).__name__)}")

    def _eval_Number(self, node):
        return ir.Constant(DOUBLE, node.value), self.builder.block

    def _eval_Variable(self, node):
        value = self.scope.lookup(node.name)
        if value is None:
            raise UnknownVariableError(f"Unknown variable name: {node.name}")
        return value, self.builder.block

    def _eval_Binary(self, node):
        lhs, _ = self._eval_node(node.lhs)
        rhs, _ = self._eval_node(node.rhs)
        op = node.op
        if op == '+':
            value = self.builder.fadd(lhs, rhs, 'addtmp')
        elif op == '-':
            value = self.builder.fsub(lhs, rhs, 'subtmp')
        elif op == '*':
            value = self.builder.fmul(lhs, rhs, 'multmp')
        elif op == '<':
            cmp = self.builder.fcmp_unordered('<', lhs, rhs, 'cmptmp')
            # i1 -> 0.0 / 1.0
            value = self.builder.uitofp(cmp, DOUBLE, 'booltmp')
        else:
            raise InvalidOperatorError(f"invalid binary operator: {op}")
        return value, self.builder.block

    def _eval_Call(self, node):
        callee = self.get_function(node.callee)
        if callee is None:
            raise UnknownFunctionError(f"Unknown function referenced: {node.callee}")
        if len(callee.args) != len(node.args):
            raise ArityError(
                f"Incorrect # arguments passed to {node.callee}: expected {len(callee.args)}, got {len(node.args)}")
        args = [self._eval_node(arg)[0] for arg in node.args]
        return self.builder.call(callee, args, 'calltmp'), self.builder.block

    # Control flow
    def _truth(self, value: ir.Value, name: str) -> ir.Value:
        # any nonzero float is true
        return self.builder.fcmp_ordered('!=', value, ir.Constant(DOUBLE, 0.0), name)

    def _eval_If(self, node):
        cond, _ = self._eval_node(node.cond)
        cond_bool = self._truth(cond, 'ifcond')

        func = self.builder.function
        then_bb = func.append_basic_block('then')
        else_bb = func.append_basic_block('else')
        merge_bb = func.append_basic_block('ifcont')
        self.builder.cbranch(cond_bool, then_bb, else_bb)

        self.builder.position_at_end(then_bb)
        then_val, then_end = self._eval_node(node.then)
        self.builder.branch(merge_bb)

        self.builder.position_at_end(else_bb)
        else_val, else_end = self._eval_node(node.orelse)
        self.builder.branch(merge_bb)

        self.builder.position_at_end(merge_bb)
        phi = self.builder.phi(DOUBLE, 'iftmp')
        phi.add_incoming(then_val, then_end)
        phi.add_incoming(else_val, else_end)
        return phi, merge_bb

    def _eval_For(self, node):
        start_val, preheader = self._eval_node(node.start)

        func = self.builder.function
        loop_bb = func.append_basic_block('loop')
        self.builder.branch(loop_bb)
        self.builder.position_at_end(loop_bb)

        phi = self.builder.phi(DOUBLE, node.var_name)
        phi.add_incoming(start_val, preheader)

        with self.scope.bound(node.var_name, phi):
            self._eval_node(node.body)
            if node.step is None:
                step_val = ir.Constant(DOUBLE, 1.0)
            else:
                step_val, _ = self._eval_node(node.step)
            next_val = self.builder.fadd(phi, step_val, 'nextvar')

        # the end condition sees the stepped value of the loop variable
        with self.scope.bound(node.var_name, next_val):
            end_val, loop_end = self._eval_node(node.end)
        end_cond = self._truth(end_val, 'loopcond')

        after_bb = func.append_basic_block('afterloop')
        self.builder.cbranch(end_cond, loop_bb, after_bb)
        phi.add_incoming(next_val, loop_end)

        self.builder.position_at_end(after_bb)
        return ir.Constant(DOUBLE, 0.0), after_bb
