import unittest

from firmlint.adapter import load_unit

from docbuilders import (
    assign,
    binary,
    call,
    cast,
    decl,
    expr_stmt,
    function,
    index,
    of_kind,
    ret,
    run_extractor,
    unary,
    unit_doc,
    while_stmt,
)


class LibraryCallTests(unittest.TestCase):
    def setUp(self) -> None:
        unit = load_unit(
            unit_doc(
                "app.c",
                functions=[
                    function(
                        "app_init",
                        [
                            decl("pool", "uint8_t *", 2, init=call("malloc", "256")),
                            expr_stmt(call("strcpy", "name", '"boot"'), 3),
                            expr_stmt(call("HAL_UART_Transmit", "huart", "pool", "4", "10"), 4),
                            expr_stmt(assign("status", call("HAL_UART_Receive", "huart", "pool", "4", "10")), 5),
                            expr_stmt(cast("void", call("xQueueSend", "q", "pool", "0")), 6),
                            expr_stmt(call("xQueueSend", "q", "pool", "0"), 7),
                        ],
                        end=8,
                    ),
                    function(
                        "worker",
                        [while_stmt("running", [expr_stmt(call("free", call("malloc", "8")), 12)], 11)],
                        line=10,
                        end=13,
                    ),
                    function(
                        "DMA1_IRQHandler",
                        [expr_stmt(call("vPortFree", "buffer"), 21)],
                        line=20,
                        end=22,
                    ),
                ],
            )
        )
        self.facts = run_extractor("library", unit)

    def test_allocation_calls(self) -> None:
        allocations = of_kind(self.facts, "DynamicAllocationCall")
        self.assertEqual(
            [(f.function, f.subject, f.details["in_isr"], f.details["in_loop"]) for f in allocations],
            [
                ("app_init", "malloc", False, False),
                ("worker", "free", False, True),
                ("worker", "malloc", False, True),
                ("DMA1_IRQHandler", "vPortFree", True, False),
            ],
        )

    def test_banned_calls(self) -> None:
        (banned,) = of_kind(self.facts, "BannedFunctionCall")
        self.assertEqual((banned.subject, banned.span.line_start), ("strcpy", 3))

    def test_ignored_return_values(self) -> None:
        ignored = of_kind(self.facts, "IgnoredReturnValue")
        self.assertEqual([(f.subject, f.span.line_start) for f in ignored], [("HAL_UART_Transmit", 4), ("xQueueSend", 7)])


class NonConstPointerParamTests(unittest.TestCase):
    def test_only_read_pointers(self) -> None:
        unit = load_unit(
            unit_doc(
                "sum.c",
                functions=[
                    function(
                        "checksum",
                        [
                            decl("acc", "uint32_t", 2, init=index("data", "0")),
                            expr_stmt(assign(unary("*", "out"), "acc"), 3),
                            expr_stmt(call("scratch_fill", "tmp", "4"), 4),
                            expr_stmt(assign("cursor", binary("+", "pass", "1")), 5),
                            expr_stmt(assign("acc", unary("*", "in"), op="+="), 6),
                            ret(7, "acc"),
                        ],
                        params=[
                            ("data", "uint8_t *"),
                            ("out", "uint32_t *"),
                            ("tmp", "uint8_t *"),
                            ("pass", "uint8_t *"),
                            ("in", "const uint8_t *"),
                        ],
                        return_type="uint32_t",
                    )
                ],
            )
        )
        (fact,) = of_kind(run_extractor("library", unit), "NonConstPointerParam")
        self.assertEqual(fact.subject, "data")
        self.assertEqual(fact.details["type"], "uint8_t *")


if __name__ == "__main__":
    unittest.main()
