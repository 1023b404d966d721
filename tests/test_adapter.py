import unittest

from firmlint.adapter import load_unit, stitch_project
from firmlint.config import Conventions
from firmlint.errors import MalformedUnitError
from firmlint.model import (
    Assign,
    Call,
    FallthroughStmt,
    ForStmt,
    IfStmt,
    Literal,
    Member,
    Name,
    SourceSpan,
    SwitchStmt,
)

from docbuilders import (
    assign,
    call,
    case,
    decl,
    expr_stmt,
    for_stmt,
    function,
    global_decl,
    if_stmt,
    member,
    ret,
    simple,
    switch,
    unary,
    unit_doc,
    unit_from_yaml,
)


class LoadUnitTests(unittest.TestCase):
    def test_yaml_document_is_normalized(self) -> None:
        unit = unit_from_yaml(
            """
            path: src/uart.c
            types: [frame_t, {name: msg, kind: struct}, {name: mode_t, kind: enum}]
            declarations:
              - {name: g_count, type: "volatile uint32_t", storage: static, span: [3, 1]}
            functions:
              - name: USART1_IRQHandler
                span: [10, 1, 20, 1]
                body:
                  - {kind: expr, span: [11, 5], expr: {kind: call, callee: HAL_Delay, args: ["10"]}}
            suppressions:
              - {rule: R-ISR-002, tag: EXC-DELAY, justification: "boot only", span: [11, 1, 11, 40]}
            """
        )
        self.assertEqual(unit.path, "src/uart.c")
        self.assertEqual(unit.struct_types, frozenset({"frame_t", "msg"}))
        g_count = unit.globals["g_count"]
        self.assertTrue(g_count.ctype.is_volatile)
        self.assertTrue(g_count.file_scope)
        self.assertTrue(g_count.is_static)

        handler = unit.function("USART1_IRQHandler")
        self.assertTrue(handler.is_isr)
        self.assertEqual(handler.calls, frozenset({"HAL_Delay"}))
        stmt = handler.body[0]
        self.assertIsInstance(stmt.expr, Call)
        self.assertIsInstance(stmt.expr.args[0], Literal)
        self.assertEqual(stmt.expr.args[0].span, SourceSpan.point("src/uart.c", 11, 5))

        (tag,) = unit.exception_tags
        self.assertEqual(tag.tag_id, "EXC-DELAY")
        self.assertEqual(tag.rules, frozenset({"R-ISR-002"}))
        self.assertEqual(tag.origin, "inline")

    def test_bare_strings_become_names_or_literals(self) -> None:
        unit = load_unit(
            unit_doc(
                "a.c",
                functions=[
                    function("f", [expr_stmt(assign(member("UART0", "DR"), "0x55"), 2)]),
                ],
            )
        )
        expr = unit.functions[0].body[0].expr
        self.assertIsInstance(expr, Assign)
        self.assertIsInstance(expr.target, Member)
        self.assertIsInstance(expr.target.base, Name)
        self.assertIsInstance(expr.value, Literal)
        self.assertEqual(expr.value.int_value, 0x55)

    def test_nested_statements(self) -> None:
        body = [
            for_stmt(decl("i", "int", 2, init=0), "i < 4", None, [], 2),
            if_stmt("ready", [ret(4)], 3, orelse=[]),
            switch(
                "state",
                [case(["0"], [simple("fallthrough", 6)], 6), case(["default"], [simple("break", 7)], 7)],
                5,
            ),
        ]
        unit = load_unit(unit_doc("a.c", functions=[function("f", body)]))
        loop, branch, sw = unit.functions[0].body
        self.assertIsInstance(loop, ForStmt)
        self.assertEqual(loop.init.decl.name, "i")
        self.assertIsInstance(branch, IfStmt)
        self.assertEqual(branch.else_body, ())
        self.assertIsInstance(sw, SwitchStmt)
        self.assertTrue(sw.has_default)
        self.assertIsInstance(sw.cases[0].body[0], FallthroughStmt)

    def test_path_argument_used_when_document_has_none(self) -> None:
        unit = load_unit({"functions": []}, path="given.c")
        self.assertEqual(unit.path, "given.c")

    def test_isr_detected_by_attribute_and_conventions(self) -> None:
        doc = unit_doc(
            "a.c",
            functions=[
                function("tick", [], attributes=["interrupt"]),
                function("on_timer", [], line=50),
            ],
        )
        unit = load_unit(doc, Conventions(isr_pattern=r"^on_"))
        self.assertTrue(unit.function("tick").is_isr)
        self.assertTrue(unit.function("on_timer").is_isr)


class MalformedUnitTests(unittest.TestCase):
    def assertMalformed(self, document, fragment: str) -> None:
        with self.assertRaises(MalformedUnitError) as ctx:
            load_unit(document)
        self.assertIn(fragment, str(ctx.exception))

    def test_missing_path(self) -> None:
        self.assertMalformed({"functions": []}, "needs a 'path'")

    def test_function_without_span(self) -> None:
        self.assertMalformed({"path": "a.c", "functions": [{"name": "f"}]}, "functions[0]: missing 'span'")

    def test_unknown_statement_kind(self) -> None:
        doc = unit_doc("a.c", functions=[function("f", [simple("asm", 2)])])
        self.assertMalformed(doc, "unknown statement kind 'asm'")

    def test_unknown_expression_kind(self) -> None:
        doc = unit_doc("a.c", functions=[function("f", [expr_stmt({"kind": "lambda"}, 2)])])
        self.assertMalformed(doc, "unknown expression kind 'lambda'")

    def test_inverted_span(self) -> None:
        doc = unit_doc("a.c", declarations=[{"name": "x", "type": "int", "span": [9, 1, 3, 1]}])
        self.assertMalformed(doc, "invalid span")

    def test_redefined_function(self) -> None:
        doc = unit_doc("a.c", functions=[function("f", []), function("f", [], line=60)])
        self.assertMalformed(doc, "redefined")

    def test_error_names_the_unit(self) -> None:
        with self.assertRaises(MalformedUnitError) as ctx:
            load_unit(unit_doc("bad.c", functions=[function("f", [simple("asm", 2)])]))
        self.assertEqual(ctx.exception.unit, "bad.c")


class StitchProjectTests(unittest.TestCase):
    def setUp(self) -> None:
        self.isr_unit = load_unit(
            unit_doc(
                "isr.c",
                functions=[
                    function("TIM2_IRQHandler", [expr_stmt(call("update_counts"), 2)]),
                ],
            )
        )
        self.lib_unit = load_unit(
            unit_doc(
                "lib.c",
                functions=[
                    function("update_counts", [expr_stmt(call("log_sample"), 2)]),
                    function("log_sample", [], line=50),
                    function("idle", [expr_stmt(call("idle"), 101)], line=100),
                ],
            )
        )

    def test_isr_reachability_crosses_units(self) -> None:
        project = stitch_project([self.isr_unit, self.lib_unit])
        self.assertEqual(project.isr_entries, frozenset({"TIM2_IRQHandler"}))
        self.assertEqual(
            project.isr_reachable,
            frozenset({"TIM2_IRQHandler", "update_counts", "log_sample"}),
        )
        self.assertFalse(project.is_isr_reachable("idle"))

    def test_independent_of_unit_order(self) -> None:
        self.assertEqual(
            stitch_project([self.isr_unit, self.lib_unit]),
            stitch_project([self.lib_unit, self.isr_unit]),
        )

    def test_shortest_cycle(self) -> None:
        ring = load_unit(
            unit_doc(
                "ring.c",
                functions=[
                    function("a", [expr_stmt(call("b"), 2)]),
                    function("b", [expr_stmt(call("c"), 51), expr_stmt(call("a"), 52)], line=50),
                    function("c", [expr_stmt(call("a"), 101)], line=100),
                ],
            )
        )
        project = stitch_project([ring, self.lib_unit])
        self.assertEqual(project.shortest_cycle("a"), ("a", "b"))
        self.assertEqual(project.shortest_cycle("idle"), ("idle",))
        self.assertIsNone(project.shortest_cycle("log_sample"))

    def test_task_reachability(self) -> None:
        main = load_unit(
            unit_doc("main.c", functions=[function("main", [expr_stmt(call("log_sample"), 2)])])
        )
        project = stitch_project([self.isr_unit, self.lib_unit, main])
        self.assertTrue(project.is_task_reachable("idle"))
        self.assertTrue(project.is_task_reachable("log_sample"))
        self.assertTrue(project.is_isr_reachable("log_sample"))
        self.assertFalse(project.is_task_reachable("update_counts"))
        self.assertFalse(project.is_task_reachable("TIM2_IRQHandler"))

    def test_isr_writers_of_external_globals(self) -> None:
        handler = load_unit(
            unit_doc(
                "it.c",
                declarations=[
                    global_decl("rx_count", "uint32_t", 1, storage="extern"),
                    global_decl("rx_state", "uint8_t", 2, storage="static"),
                    global_decl("rx_last", "uint8_t", 3),
                ],
                functions=[
                    function(
                        "USART1_IRQHandler",
                        [
                            expr_stmt(unary("++", "rx_count", postfix=True), 11),
                            expr_stmt(assign("rx_state", "1"), 12),
                            decl("rx_last", "uint8_t", 13),
                            expr_stmt(assign("rx_last", "2"), 14),
                        ],
                        line=10,
                        end=15,
                    ),
                    function("uart_idle", [expr_stmt(assign("rx_count", "0"), 21)], line=20, end=22),
                ],
            )
        )
        project = stitch_project([handler])
        self.assertEqual(project.isr_writers_of("rx_count"), ("USART1_IRQHandler",))
        self.assertEqual(project.isr_writers_of("rx_state"), ())
        self.assertEqual(project.isr_writers_of("rx_last"), ())

    def test_duplicate_external_definitions(self) -> None:
        other = load_unit(
            unit_doc(
                "other.c",
                functions=[function("log_sample", []), function("idle", [], line=50, static=True)],
            )
        )
        with self.assertLogs("firmlint.adapter", level="WARNING"):
            project = stitch_project([self.lib_unit, other])
        self.assertEqual(project.duplicates, (("log_sample", ("lib.c", "other.c")),))
        self.assertEqual(len(project.functions_by_name["idle"]), 2)

    def test_global_declarations_keep_order(self) -> None:
        unit = load_unit(
            unit_doc("g.c", declarations=[global_decl("b", "int", 2), global_decl("a", "int", 3)])
        )
        self.assertEqual([d.name for d in unit.declarations], ["b", "a"])
        self.assertEqual(set(unit.globals), {"b", "a"})


if __name__ == "__main__":
    unittest.main()
