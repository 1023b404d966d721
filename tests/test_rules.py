import os
import tempfile
import textwrap
import unittest

from firmlint.config import config_from_mapping
from firmlint.errors import ConfigurationError, ExpressionEvalError
from firmlint.facts import FACT_KINDS, Fact
from firmlint.model import ExceptionTag, SourceSpan
from firmlint.rules import RuleCatalog, UnitView, default_catalog, load_catalog, rules_from_documents


def catalog_from(*rules) -> RuleCatalog:
    return rules_from_documents([("test", list(rules))])


def rule(rule_id: str = "R-TEST-001", **fields):
    raw = {"id": rule_id, "category": "types", "facts": ["MagicNumber"], "message": "m"}
    raw.update(fields)
    return raw


def magic_fact(value: str = "42", context: str = "arith") -> Fact:
    return Fact(
        "MagicNumber",
        SourceSpan.point("a.c", 3, 9),
        value,
        function="f",
        details={"value": int(value), "context": context},
    )


class DefaultCatalogTests(unittest.TestCase):
    def test_shipped_rules_load(self) -> None:
        catalog = default_catalog()
        self.assertEqual(len(catalog), 30)
        self.assertEqual(list(catalog.ids), sorted(catalog.ids))
        for rule_obj in catalog:
            with self.subTest(rule=rule_obj.id):
                self.assertTrue(rule_obj.description)
                self.assertTrue(all(kind in FACT_KINDS for kind in rule_obj.facts))

    def test_every_fact_kind_has_a_rule(self) -> None:
        catalog = default_catalog()
        subscribed = catalog.subscribed_kinds(catalog.configure(config_from_mapping(None)))
        self.assertEqual(subscribed, frozenset(FACT_KINDS))

    def test_register_access_feeds_three_rules(self) -> None:
        consumers = [r.id for r in default_catalog() if "RegisterAccess" in r.facts]
        self.assertEqual(consumers, ["R-BIT-001", "R-REG-001", "R-REG-002"])


class BuildRuleTests(unittest.TestCase):
    def test_defaults(self) -> None:
        catalog = catalog_from(rule(description="  Named constants.  "))
        built = catalog.get("R-TEST-001")
        self.assertIsNone(built.severity)
        self.assertEqual(built.description, "Named constants.")
        self.assertTrue(built.where.evaluate({}))
        self.assertIsNone(built.fixit)

    def test_single_document_mapping(self) -> None:
        catalog = rules_from_documents([("test", rule())])
        self.assertIn("R-TEST-001", catalog)

    def test_problems_are_collected(self) -> None:
        with self.assertLogs("firmlint.rules", level="ERROR"):
            with self.assertRaises(ConfigurationError) as ctx:
                catalog_from(
                    rule("bad-id"),
                    rule("R-TEST-002", category="style"),
                    rule("R-TEST-003", facts=["Nope"], severity="fatal"),
                    rule("R-TEST-004", where="fact.__dict__"),
                    rule("R-TEST-005", colour="red"),
                    {"id": "R-TEST-006", "category": "types"},
                    "not a rule",
                )
        problems = "\n".join(ctx.exception.problems)
        self.assertIn("rule ids look like", problems)
        self.assertIn("unknown category 'style'", problems)
        self.assertIn("unknown fact kind 'Nope'", problems)
        self.assertIn("invalid severity 'fatal'", problems)
        self.assertIn("bad 'where' expression", problems)
        self.assertIn("unknown field 'colour'", problems)
        self.assertIn("missing required field(s) ['facts', 'message']", problems)
        self.assertIn("rule entry must be a mapping", problems)

    def test_duplicate_ids(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            catalog_from(rule(), rule())
        self.assertEqual(ctx.exception.problems, ("duplicate rule id 'R-TEST-001'",))

    def test_load_catalog_from_files(self) -> None:
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "rules.yaml")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(
                    textwrap.dedent(
                        """
                        - id: R-TEST-001
                          category: types
                          facts: MagicNumber
                          message: "magic {{ fact.subject }}"
                        ---
                        rules:
                          - id: R-TEST-002
                            category: library
                            facts: [BannedFunctionCall]
                            message: banned
                        """
                    )
                )
            catalog = load_catalog([path])
        self.assertEqual(catalog.ids, ("R-TEST-001", "R-TEST-002"))
        self.assertEqual(catalog.get("R-TEST-001").facts, ("MagicNumber",))

    def test_load_catalog_missing_file(self) -> None:
        with self.assertRaises(ConfigurationError):
            load_catalog(["/nonexistent/rules.yaml"])


class ConfigureTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = catalog_from(
            rule("R-TEST-001", params={"limit": 10}),
            rule("R-TEST-002", severity="error", category="library", facts=["BannedFunctionCall"]),
        )

    def test_severity_resolution(self) -> None:
        config = config_from_mapping(
            {"rules": {"R-TEST-001": {"params": {"limit": 3}}}, "categories": {"types": "info"}}
        )
        first, second = self.catalog.configure(config)
        self.assertEqual(first.severity, "info")
        self.assertEqual(first.params, {"limit": 3})
        self.assertEqual(second.severity, "error")

    def test_rule_override_beats_declared_severity(self) -> None:
        config = config_from_mapping({"rules": {"R-TEST-002": {"severity": "warning"}}})
        active = {r.id: r for r in self.catalog.configure(config)}
        self.assertEqual(active["R-TEST-002"].severity, "warning")
        self.assertEqual(active["R-TEST-001"].severity, "warning")

    def test_disabled_rules_are_dropped(self) -> None:
        active = self.catalog.configure(config_from_mapping({"rules": {"R-TEST-001": False}}))
        self.assertEqual([r.id for r in active], ["R-TEST-002"])

    def test_unknown_rule_ids(self) -> None:
        config = config_from_mapping({"rules": {"R-NOPE-001": {"severity": "error"}}})
        with self.assertRaises(ConfigurationError) as ctx:
            self.catalog.configure(config)
        self.assertIn("unknown rule id 'R-NOPE-001'", ctx.exception.problems[0])

    def test_unknown_rule_in_exception_tag(self) -> None:
        tag = ExceptionTag("EXC-1", "ok", SourceSpan.whole_file("a.c"), frozenset({"R-NOPE-002"}))
        problems = self.catalog.validate(config_from_mapping(None), [tag])
        self.assertEqual(len(problems), 1)
        self.assertIn("names unknown rule id 'R-NOPE-002'", problems[0])


class ActiveRuleTests(unittest.TestCase):
    def test_predicate_and_message(self) -> None:
        catalog = catalog_from(
            rule(
                where="fact.details.context not in params.ignored",
                message="magic {{ fact.subject }} in '{{ fact.function }}' ({{ unit.path }})",
                fixit="{{ '' if fact.details.value < 100 else 'name it' }}",
                params={"ignored": ["shift"]},
            )
        )
        (active,) = catalog.configure(config_from_mapping(None))
        unit = UnitView("a.c")
        env = active.env(magic_fact(), unit)
        self.assertTrue(active.applies(env))
        self.assertEqual(active.render_message(env), "magic 42 in 'f' (a.c)")
        self.assertIsNone(active.render_fix(env))
        self.assertEqual(active.render_fix(active.env(magic_fact("400"), unit)), "name it")
        self.assertFalse(active.applies(active.env(magic_fact(context="shift"), unit)))

    def test_params_are_read_only(self) -> None:
        catalog = catalog_from(
            rule("R-TEST-001", where="params.clear() or True", params={"limit": 10}),
            rule("R-TEST-002", where="params.ignored.append('x') or True", params={"ignored": ["shift"]}),
        )
        clearing, appending = catalog.configure(config_from_mapping(None))
        unit = UnitView("a.c")
        with self.assertRaises(ExpressionEvalError):
            clearing.applies(clearing.env(magic_fact(), unit))
        with self.assertRaises(ExpressionEvalError):
            appending.applies(appending.env(magic_fact(), unit))
        self.assertEqual(dict(clearing.params), {"limit": 10})
        self.assertEqual(appending.params["ignored"], ("shift",))
        self.assertEqual(catalog.get("R-TEST-002").params, {"ignored": ["shift"]})


if __name__ == "__main__":
    unittest.main()
