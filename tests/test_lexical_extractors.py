import unittest

from firmlint.adapter import load_unit
from firmlint.config import Conventions

from docbuilders import (
    assign,
    binary,
    call,
    cast,
    decl,
    expr_stmt,
    function,
    global_decl,
    if_stmt,
    index,
    of_kind,
    ret,
    run_extractor,
    unit_doc,
)


class BitwiseExtractorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.unit = load_unit(
            unit_doc(
                "bits.c",
                functions=[
                    function(
                        "bits",
                        [
                            expr_stmt(assign("r", binary("&", "flags", "0x4U")), 2),
                            expr_stmt(assign("flags", "2", op="|="), 3),
                            expr_stmt(assign("r", binary("<<", "b", "32")), 4),
                            expr_stmt(assign("r", binary("<<", "b", "8")), 5),
                            expr_stmt(assign("r", binary(">>", cast("int16_t", "b"), "2")), 6),
                            expr_stmt(assign("r", binary("<<", "1ULL", "40")), 7),
                        ],
                        params=[("flags", "int"), ("b", "uint8_t")],
                    )
                ],
            )
        )
        self.facts = run_extractor("bitwise", self.unit)

    def test_signed_operands(self) -> None:
        signed = of_kind(self.facts, "SignedBitwiseOperand")
        self.assertEqual(
            [(f.subject, f.span.line_start, f.details["literal"]) for f in signed],
            [("flags", 2, False), ("flags", 3, False), ("2", 3, True), ("(int16_t)b", 6, False)],
        )
        self.assertEqual(signed[0].details["type"], "int")
        self.assertEqual(signed[1].details["operator"], "|=")

    def test_shift_width(self) -> None:
        (shift,) = of_kind(self.facts, "ShiftExceedsWidth")
        self.assertEqual(shift.subject, "b")
        self.assertEqual(shift.details["amount"], 32)
        self.assertEqual(shift.details["width"], 32)
        self.assertEqual(shift.span.line_start, 4)


class OctalLiteralTests(unittest.TestCase):
    def test_tokens_are_preferred(self) -> None:
        unit = load_unit(
            unit_doc(
                "perm.c",
                tokens=[
                    {"kind": "literal", "text": "0755", "span": [3, 18]},
                    {"kind": "literal", "text": "0", "span": [4, 18]},
                    {"kind": "identifier", "text": "mode", "span": [3, 10]},
                ],
            )
        )
        (fact,) = run_extractor("lexical", unit)
        self.assertEqual((fact.kind, fact.subject, fact.details["value"]), ("OctalLiteral", "0755", 493))
        self.assertIsNone(fact.function)

    def test_expression_literals_without_tokens(self) -> None:
        unit = load_unit(
            unit_doc(
                "perm.c",
                declarations=[global_decl("MODE", "const uint16_t", 1, init="0644")],
                functions=[function("f", [expr_stmt(assign("m", "017"), 3)], line=2)],
            )
        )
        facts = of_kind(run_extractor("lexical", unit), "OctalLiteral")
        self.assertEqual(sorted(f.subject for f in facts), ["017", "0644"])


class MagicNumberTests(unittest.TestCase):
    def body(self):
        return [
            decl("limit", "const uint32_t", 2, init="500"),
            decl("n", "uint32_t", 3, init="42"),
            expr_stmt(assign("x", binary("<<", "1", "4")), 4),
            if_stmt(binary(">", "n", "100"), [], 5),
            ret(6, "7"),
            expr_stmt(call("delay", "250"), 7),
            expr_stmt(assign(index("buf", "3"), "0"), 8),
        ]

    def test_contexts(self) -> None:
        unit = load_unit(unit_doc("magic.c", functions=[function("f", self.body(), return_type="uint8_t")]))
        facts = of_kind(run_extractor("lexical", unit), "MagicNumber")
        self.assertEqual(
            [(f.subject, f.details["context"]) for f in facts],
            [
                ("42", "initializer"),
                ("4", "shift"),
                ("100", "compare"),
                ("7", "return"),
                ("250", "argument"),
                ("3", "index"),
            ],
        )

    def test_allowlist_comes_from_conventions(self) -> None:
        conventions = Conventions(magic_number_allowlist=(0, 1, 3, 4, 7, 42, 100, 250))
        unit = load_unit(unit_doc("magic.c", functions=[function("f", self.body(), return_type="uint8_t")]))
        facts = of_kind(run_extractor("lexical", unit, conventions=conventions), "MagicNumber")
        self.assertEqual(facts, [])


class NativeTypeTests(unittest.TestCase):
    def test_native_integer_declarations(self) -> None:
        unit = load_unit(
            unit_doc(
                "types.c",
                declarations=[global_decl("g_count", "int", 1), global_decl("g_name", "char [8]", 2)],
                functions=[
                    function(
                        "compute",
                        [decl("acc", "long", 11, init="0"), decl("i", "uint16_t", 12, init="0")],
                        line=10,
                        end=20,
                        params=[("x", "unsigned")],
                        return_type="int",
                    ),
                    function("main", [], line=30, return_type="int"),
                ],
            )
        )
        facts = of_kind(run_extractor("lexical", unit), "NonFixedWidthType")
        self.assertEqual(
            [(f.subject, f.details["where"], f.details["suggestion"]) for f in facts],
            [
                ("g_count", "declaration", "int32_t"),
                ("compute", "return", "int32_t"),
                ("x", "parameter", "uint32_t"),
                ("acc", "declaration", "int32_t"),
            ],
        )


if __name__ == "__main__":
    unittest.main()
