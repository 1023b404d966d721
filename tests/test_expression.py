import types
import unittest

from firmlint.errors import ExpressionEvalError
from firmlint.expression import compile_expression, compile_template, evaluate, render_template


class ExpressionEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fact = types.SimpleNamespace(
            kind="shared_variable_access",
            subject="g_count",
            details=types.MappingProxyType({"width": 32, "writers": ("isr", "task"), "critical": False}),
        )
        self.env = {"fact": self.fact, "params": {"max_width": 32}}

    def test_boolean_logic_and_comparisons(self) -> None:
        self.assertTrue(evaluate("not fact.details.critical and fact.details.width <= params['max_width']", self.env))
        self.assertFalse(evaluate("1 < fact.details.width < 16", self.env))
        self.assertEqual(evaluate("'x' if fact.details.critical else 'y'", self.env), "y")

    def test_mapping_keys_read_as_attributes(self) -> None:
        self.assertEqual(evaluate("fact.details.writers", self.env), ("isr", "task"))
        self.assertEqual(evaluate("params.max_width * 2", self.env), 64)

    def test_unknown_key_is_an_error(self) -> None:
        with self.assertRaises(ExpressionEvalError) as ctx:
            evaluate("fact.details.readers", self.env)
        self.assertIn("unknown key 'readers'", str(ctx.exception))

    def test_unknown_identifier_is_an_error(self) -> None:
        with self.assertRaises(ExpressionEvalError):
            evaluate("missing > 1", self.env)

    def test_safe_callables_and_comprehensions(self) -> None:
        self.assertTrue(evaluate("any(w == 'isr' for w in fact.details.writers)", self.env))
        self.assertEqual(evaluate("[w.upper() for w in fact.details.writers if w != 'task']", self.env), ["ISR"])
        self.assertTrue(evaluate("matches('^g_', fact.subject)", self.env))
        self.assertEqual(evaluate("len(sorted(fact.details.writers))", self.env), 2)
        self.assertEqual(evaluate("{k: v for k, v in [('a', 1)]}", {}), {"a": 1})

    def test_empty_expression_is_true(self) -> None:
        self.assertTrue(compile_expression("").evaluate({}))
        self.assertTrue(compile_expression(None).evaluate({}))

    def test_unsafe_constructs_rejected_at_compile_time(self) -> None:
        for source in (
            "(lambda x: x)(1)",
            "fact.__class__",
            "_hidden",
            "x := 1",
            "fact.subject;",
        ):
            with self.subTest(source=source):
                with self.assertRaises(ExpressionEvalError):
                    compile_expression(source)

    def test_builtins_are_not_reachable(self) -> None:
        with self.assertRaises(ExpressionEvalError):
            evaluate("open('x')", {})
        with self.assertRaises(ExpressionEvalError):
            evaluate("print(1)", {})

    def test_bad_subscript(self) -> None:
        with self.assertRaises(ExpressionEvalError):
            evaluate("params['nope']", self.env)


class TemplateTests(unittest.TestCase):
    def test_render(self) -> None:
        env = {"fact": types.SimpleNamespace(subject="g_count", details={"width": 32})}
        text = render_template("'{{ fact.subject }}' is {{ fact.details.width }} bits wide", env)
        self.assertEqual(text, "'g_count' is 32 bits wide")

    def test_none_renders_empty(self) -> None:
        self.assertEqual(render_template("[{{ value }}]", {"value": None}), "[]")

    def test_expressions_compiled_up_front(self) -> None:
        template = compile_template("{{ a }} and {{ b + 1 }}")
        self.assertEqual([expr.source for expr in template.expressions], ["a", "b + 1"])
        with self.assertRaises(ExpressionEvalError):
            compile_template("{{ __import__('os') }}")


if __name__ == "__main__":
    unittest.main()
