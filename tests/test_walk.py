import unittest

from firmlint.adapter import load_unit
from firmlint.config import Conventions
from firmlint.model import Cast, Name, Unary
from firmlint.walk import ADDR, READ, RMW, WRITE, proves_nonnull, root_name, walk_function

from docbuilders import (
    assign,
    binary,
    call,
    cast,
    expr_stmt,
    function,
    if_stmt,
    member,
    ret,
    unary,
    unit_doc,
    while_stmt,
)


def walk(body, params=(("p", "uint8_t *"), ("q", "uint8_t *"))):
    unit = load_unit(unit_doc("w.c", functions=[function("f", body, params=params)]))
    return walk_function(unit.functions[0], Conventions())


def name_sites(result, name):
    return [site for site in result.sites if isinstance(site.expr, Name) and site.expr.id == name]


def deref_sites(result):
    return [site for site in result.sites if isinstance(site.expr, Unary) and site.expr.op == "*"]


class NullDominanceTests(unittest.TestCase):
    def test_enclosing_condition(self) -> None:
        result = walk(
            [
                if_stmt(
                    binary("!=", "p", "NULL"),
                    [expr_stmt(assign("x", unary("*", "p")), 3)],
                    2,
                    orelse=[expr_stmt(assign("y", unary("*", "p")), 5)],
                )
            ]
        )
        inside, in_else = deref_sites(result)
        self.assertIn("p", inside.nonnull)
        self.assertNotIn("p", in_else.nonnull)

    def test_early_exit(self) -> None:
        result = walk([if_stmt(unary("!", "p"), [ret(2)], 2), expr_stmt(assign(unary("*", "p"), "1"), 3)])
        (site,) = deref_sites(result)
        self.assertIn("p", site.nonnull)
        self.assertEqual(site.access, WRITE)

    def test_assert_call(self) -> None:
        result = walk([expr_stmt(call("configASSERT", "p"), 2), expr_stmt(assign("x", unary("*", "p")), 3)])
        self.assertIn("p", deref_sites(result)[0].nonnull)

    def test_assignment_drops_the_check(self) -> None:
        result = walk(
            [
                if_stmt(binary("==", "p", "NULL"), [ret(2)], 2),
                expr_stmt(assign("p", "q"), 3),
                expr_stmt(assign("y", unary("*", "p")), 4),
            ]
        )
        self.assertNotIn("p", deref_sites(result)[0].nonnull)

    def test_short_circuit(self) -> None:
        result = walk([expr_stmt(binary("&&", "p", binary("==", unary("*", "p"), "3")), 2)])
        self.assertIn("p", deref_sites(result)[0].nonnull)

    def test_proves_nonnull_on_false_branch_of_or(self) -> None:
        unit = load_unit(
            unit_doc(
                "w.c",
                functions=[function("f", [if_stmt(binary("||", binary("==", "p", "NULL"), unary("!", "q")), [], 2)])],
            )
        )
        cond = unit.functions[0].body[0].cond
        self.assertEqual(proves_nonnull(cond, False), {"p", "q"})
        self.assertEqual(proves_nonnull(cond, True), set())


class AccessModeTests(unittest.TestCase):
    def test_modes(self) -> None:
        result = walk(
            [
                expr_stmt(assign("x", "1", op="+="), 2),
                expr_stmt(unary("++", "cnt", postfix=True), 3),
                expr_stmt(call("fill", unary("&", "buf")), 4),
                expr_stmt(assign(member("s", "f", arrow=False), "1"), 5),
                expr_stmt(assign(member("p", "f"), "1"), 6),
            ]
        )
        self.assertEqual(name_sites(result, "x")[0].access, RMW)
        self.assertEqual(name_sites(result, "cnt")[0].access, RMW)
        self.assertEqual(name_sites(result, "buf")[0].access, ADDR)
        self.assertEqual(name_sites(result, "s")[0].access, WRITE)
        self.assertEqual(name_sites(result, "p")[0].access, READ)

    def test_root_name(self) -> None:
        result = walk([expr_stmt(assign(member(unary("*", "p"), "f", arrow=False), "1"), 2)])
        self.assertEqual(root_name(result.sites[0].expr.target), "p")


class CriticalSectionTests(unittest.TestCase):
    def test_sites_inside_section(self) -> None:
        result = walk(
            [
                expr_stmt(call("__disable_irq"), 2),
                expr_stmt(assign("g", "1"), 3),
                expr_stmt(call("__enable_irq"), 4),
                expr_stmt(assign("g", "2"), 5),
            ]
        )
        inside, outside = name_sites(result, "g")
        self.assertTrue(inside.critical)
        self.assertFalse(outside.critical)
        self.assertEqual(result.critical_issues, [])

    def test_return_inside_section(self) -> None:
        result = walk(
            [
                expr_stmt(call("taskENTER_CRITICAL"), 2),
                if_stmt("g", [ret(4)], 3),
                expr_stmt(call("taskEXIT_CRITICAL"), 5),
            ]
        )
        self.assertEqual([issue.reason for issue in result.critical_issues], ["return inside a critical section"])

    def test_exit_without_enter_and_open_section(self) -> None:
        result = walk(
            [
                expr_stmt(call("__enable_irq"), 2),
                expr_stmt(call("__disable_irq"), 3),
            ]
        )
        self.assertEqual(
            [issue.reason for issue in result.critical_issues],
            ["'__enable_irq' without a matching enter", "function can end inside a critical section"],
        )

    def test_branch_that_exits_does_not_leak(self) -> None:
        result = walk(
            [
                if_stmt("busy", [expr_stmt(call("__disable_irq"), 3), ret(4)], 2),
                expr_stmt(assign("g", "1"), 5),
            ]
        )
        self.assertFalse(name_sites(result, "g")[0].critical)


class RangeAndLoopTests(unittest.TestCase):
    def test_range_checks_are_sticky(self) -> None:
        result = walk(
            [
                expr_stmt(assign("a", cast("uint8_t", "v")), 2),
                if_stmt(binary(">", "v", "255"), [ret(3)], 3),
                expr_stmt(assign("b", cast("uint8_t", "v")), 4),
            ]
        )
        first, second = [site for site in result.sites if isinstance(site.expr, Cast)]
        self.assertNotIn("v", first.ranged)
        self.assertIn("v", second.ranged)

    def test_loop_depth(self) -> None:
        result = walk([while_stmt("running", [while_stmt("x", [expr_stmt(assign("y", "1"), 4)], 3)], 2)])
        self.assertEqual(name_sites(result, "running")[0].loop_depth, 0)
        self.assertEqual(name_sites(result, "y")[0].loop_depth, 2)


if __name__ == "__main__":
    unittest.main()
