import unittest

from llvmlite import ir

from zlang_ast import Prototype
from zlang_llvm_ir_codegen import (
    ArityError,
    BindingScope,
    CodegenConfig,
    CodegenError,
    InvalidOperatorError,
    UnknownFunctionError,
    UnknownVariableError,
    ZlangLLVMCodegen,
)
from zlang_parser import ZlangParser
from zlang_session import PrototypeRegistry


def definition(code):
    return ZlangParser.from_source(code).parse_definition()


def extern(code):
    return ZlangParser.from_source(code).parse_extern()


def anonymous(code):
    return ZlangParser.from_source(code).parse_top_level_expr()


def opnames(fn):
    return [instr.opname for block in fn.blocks for instr in block.instructions]


class BindingScopeTests(unittest.TestCase):
    def test_push_pop_restores_shadowed_binding(self):
        scope = BindingScope()
        outer, inner = ir.Constant(ir.DoubleType(), 1.0), ir.Constant(ir.DoubleType(), 2.0)
        scope.reset([("i", outer)])
        with scope.bound("i", inner):
            self.assertIs(scope.lookup("i"), inner)
        self.assertIs(scope.lookup("i"), outer)
        with scope.bound("j", inner):
            self.assertIn("j", scope)
        self.assertNotIn("j", scope)
        self.assertIsNone(scope.lookup("j"))


class LoweringTests(unittest.TestCase):
    def setUp(self):
        self.registry = PrototypeRegistry()
        self.codegen = ZlangLLVMCodegen(self.registry, CodegenConfig(opt_level=0))

    def test_arithmetic_definition(self):
        fn = self.codegen.lower_function(definition("def f(a b) a + b * 2 - 1"))
        self.assertEqual([a.name for a in fn.args], ["a", "b"])
        self.assertEqual(opnames(fn), ["fmul", "fadd", "fsub", "ret"])
        self.assertIn("f", self.registry)

    def test_less_than_yields_float(self):
        fn = self.codegen.lower_function(definition("def lt(a b) a < b"))
        self.assertEqual(opnames(fn), ["fcmp", "uitofp", "ret"])
        self.assertIn("fcmp ult", str(fn))

    def test_if_lowers_to_blocks_and_phi(self):
        fn = self.codegen.lower_function(definition("def pick(x) if x then 1 else 2"))
        self.assertEqual([b.name for b in fn.blocks], ["entry", "then", "else", "ifcont"])
        self.assertIn("fcmp one", str(fn))
        phi = fn.blocks[-1].instructions[0]
        self.assertEqual(phi.opname, "phi")
        self.assertEqual(phi.name, "iftmp")
        self.assertEqual([blk.name for _, blk in phi.incomings], ["then", "else"])

    def test_nested_if_uses_terminating_blocks(self):
        fn = self.codegen.lower_function(definition("def g(x) if x then (if x < 2 then 3 else 4) else 5"))
        blocks = {b.name: b for b in fn.blocks}
        outer_phi = blocks["ifcont"].instructions[0]
        self.assertEqual(outer_phi.opname, "phi")
        # the then arm finished in the inner merge block, not in "then"
        self.assertEqual([blk.name for _, blk in outer_phi.incomings], ["ifcont.1", "else"])

    def test_for_lowers_to_loop_with_induction_phi(self):
        self.codegen.lower_extern(extern("extern printd(x)"))
        fn = self.codegen.lower_function(definition("def count(n) for i = 1, i < n in printd(i)"))
        self.assertEqual([b.name for b in fn.blocks], ["entry", "loop", "afterloop"])
        phi = fn.blocks[1].instructions[0]
        self.assertEqual(phi.opname, "phi")
        self.assertEqual(phi.name, "i")
        self.assertEqual([blk.name for _, blk in phi.incomings], ["entry", "loop"])
        self.assertIn("nextvar", str(fn))
        ret = fn.blocks[-1].instructions[-1]
        self.assertEqual(ret.opname, "ret")
        self.assertIn("0x0", str(ret))

    def test_for_inside_if_arm_feeds_phi_from_afterloop(self):
        fn = self.codegen.lower_function(definition("def f(n) if n then (for i = 0, i < n in 0) + 7 else 3"))
        self.assertEqual([b.name for b in fn.blocks],
                         ["entry", "then", "else", "ifcont", "loop", "afterloop"])
        blocks = {b.name: b for b in fn.blocks}
        outer_phi = blocks["ifcont"].instructions[0]
        self.assertEqual([blk.name for _, blk in outer_phi.incomings], ["afterloop", "else"])
        loop_phi = blocks["loop"].instructions[0]
        self.assertEqual([blk.name for _, blk in loop_phi.incomings], ["then", "loop"])

    def test_if_inside_for_body_feeds_back_edge_from_ifcont(self):
        fn = self.codegen.lower_function(definition("def g(n) for i = 0, i < n in (if i then 1 else 2)"))
        self.assertEqual([b.name for b in fn.blocks],
                         ["entry", "loop", "then", "else", "ifcont", "afterloop"])
        loop_phi = fn.blocks[1].instructions[0]
        self.assertEqual([blk.name for _, blk in loop_phi.incomings], ["entry", "ifcont"])
        self.assertEqual(fn.blocks[4].instructions[-1].opname, "br")

    def test_if_inside_for_end_feeds_back_edge_from_ifcont(self):
        fn = self.codegen.lower_function(definition("def h(n) for i = 0, (if i < n then 1 else 0) in 0"))
        loop_phi = fn.blocks[1].instructions[0]
        self.assertEqual([blk.name for _, blk in loop_phi.incomings], ["entry", "ifcont"])

    def test_loop_variable_is_not_visible_after_loop(self):
        with self.assertRaises(UnknownVariableError):
            self.codegen.lower_function(definition("def h() (for i = 1, i < 3 in 0) + i"))

    def test_unknown_variable_discards_function_and_registry_entry(self):
        with self.assertRaises(UnknownVariableError) as ctx:
            self.codegen.lower_function(definition("def bad(x) y"))
        self.assertIn("Unknown variable name", str(ctx.exception))
        self.assertIsInstance(ctx.exception, NameError)
        self.assertNotIn("bad", self.codegen.module.globals)
        self.assertNotIn("bad", self.registry)

    def test_failed_redefinition_restores_previous_prototype(self):
        self.codegen.lower_function(definition("def g(x) x"))
        self.codegen.finish_unit()
        with self.assertRaises(CodegenError):
            self.codegen.lower_function(definition("def g(a b) c"))
        self.assertEqual(self.registry.lookup("g"), Prototype("g", ("x",)))
        self.assertNotIn("g", self.codegen.module.globals)

    def test_unknown_function(self):
        with self.assertRaises(UnknownFunctionError) as ctx:
            self.codegen.lower_function(anonymous("nope(1)"))
        self.assertIn("Unknown function referenced", str(ctx.exception))

    def test_arity_mismatch_leaves_no_anonymous_function(self):
        self.codegen.lower_function(definition("def f(a b) a + b"))
        self.codegen.finish_unit()
        with self.assertRaises(ArityError) as ctx:
            self.codegen.lower_function(anonymous("f(1)"))
        self.assertIn("Incorrect # arguments passed", str(ctx.exception))
        self.assertNotIn("__anon_expr", self.codegen.module.globals)
        # the name is free again for the next expression
        self.codegen.lower_function(anonymous("f(1, 2)"))
        self.assertIn("__anon_expr", self.codegen.module.globals)

    def test_parseable_operators_without_lowering(self):
        for code in ("def gt(a b) a > b", "def div(a b) a / b"):
            with self.assertRaises(InvalidOperatorError) as ctx:
                self.codegen.lower_function(definition(code))
            self.assertIn("invalid binary operator", str(ctx.exception))

    def test_anonymous_prototype_is_never_registered(self):
        self.codegen.lower_function(anonymous("1 + 2"))
        self.assertNotIn("__anon_expr", self.registry)
        self.assertEqual(len(self.registry), 0)

    def test_recursive_definition(self):
        fn = self.codegen.lower_function(definition("def fib(x) if x < 3 then 1 else fib(x-1) + fib(x-2)"))
        calls = [i for b in fn.blocks for i in b.instructions if i.opname == "call"]
        self.assertEqual(len(calls), 2)
        self.assertTrue(all(c.callee is fn for c in calls))


class UnitTests(unittest.TestCase):
    def setUp(self):
        self.registry = PrototypeRegistry()
        self.codegen = ZlangLLVMCodegen(self.registry)

    def test_finish_unit_rotates_and_reports_imports_and_exports(self):
        self.codegen.lower_extern(extern("extern later(x)"))
        self.codegen.lower_function(definition("def early(x) later(x) + 1"))
        first = self.codegen.module
        unit = self.codegen.finish_unit()
        self.assertEqual(unit.name, first.name)
        self.assertEqual(unit.imports, ("later",))
        self.assertEqual(unit.exports, ("early",))
        self.assertIsNot(self.codegen.module, first)
        self.assertEqual(len(self.codegen.module.globals), 0)
        self.assertIn("define double @", unit.function_ir("early"))

    def test_cross_unit_call_emits_declaration(self):
        self.codegen.lower_function(definition("def sq(x) x * x"))
        self.codegen.finish_unit()
        self.codegen.lower_function(anonymous("sq(3)"))
        sq = self.codegen.module.globals["sq"]
        self.assertTrue(sq.is_declaration)
        unit = self.codegen.finish_unit()
        self.assertEqual(unit.imports, ("sq",))
        self.assertEqual(unit.exports, ("__anon_expr",))

    def test_unused_extern_is_not_an_import(self):
        self.codegen.lower_extern(extern("extern cos(x)"))
        self.codegen.lower_function(anonymous("2"))
        self.assertEqual(self.codegen.finish_unit().imports, ())

    def test_extern_redeclared_with_other_arity_replaces_declaration(self):
        self.codegen.lower_extern(extern("extern f(a)"))
        with self.assertLogs("zlang.session", level="WARNING"):
            fn = self.codegen.lower_extern(extern("extern f(a b)"))
        self.assertEqual(len(fn.args), 2)
        self.assertIs(self.codegen.module.globals["f"], fn)
        self.assertEqual(self.registry.lookup("f").arity, 2)

    def test_matching_extern_is_reused(self):
        first = self.codegen.lower_extern(extern("extern f(a)"))
        self.assertIs(self.codegen.lower_extern(extern("extern f(b)")), first)

    def test_module_carries_host_triple(self):
        self.assertTrue(self.codegen.module.triple)
        self.assertIn('target triple', self.codegen.dump_unit())

    def test_optimizer_folds_constants(self):
        self.codegen.lower_function(anonymous("1 + 2 * 3"))
        text = self.codegen.finish_unit().function_ir("__anon_expr")
        self.assertIn("ret double 7.000000e+00", text)


if __name__ == "__main__":
    unittest.main()
