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
    member,
    of_kind,
    ret,
    run_extractor,
    unary,
    unit_doc,
    while_stmt,
)


class AggregateTransmitTests(unittest.TestCase):
    def test_structs_passed_whole(self) -> None:
        unit = load_unit(
            unit_doc(
                "tx.c",
                types=["frame_t"],
                functions=[
                    function(
                        "send_frame",
                        [
                            decl("frame", "frame_t", 2),
                            decl("p", "frame_t *", 3, init=unary("&", "frame")),
                            expr_stmt(
                                call("HAL_UART_Transmit", "huart1", cast("uint8_t *", unary("&", "frame")), "sizeof(frame)", "100"),
                                4,
                            ),
                            expr_stmt(call("uart_write", "p"), 5),
                            expr_stmt(call("uart_write", "msg"), 6),
                            expr_stmt(call("log_frame", "frame"), 7),
                        ],
                        params=[("msg", "struct msg")],
                    )
                ],
            )
        )
        facts = of_kind(run_extractor("interfacing", unit), "AggregateTransmit")
        self.assertEqual(
            [(f.subject, f.details["callee"], f.details["argument"], f.details["type"]) for f in facts],
            [("frame", "HAL_UART_Transmit", 1, "frame_t"), ("msg", "uart_write", 0, "struct msg")],
        )

    def test_device_handles_are_not_payloads(self) -> None:
        unit = load_unit(
            unit_doc(
                "tx.c",
                types=["UART_HandleTypeDef", "I2C_HandleTypeDef"],
                declarations=[
                    global_decl("huart2", "UART_HandleTypeDef", 1),
                    global_decl("hi2c1", "I2C_HandleTypeDef", 2),
                ],
                functions=[
                    function(
                        "send_bytes",
                        [
                            expr_stmt(call("HAL_UART_Transmit", unary("&", "huart2"), "buf", "4", "100"), 11),
                            expr_stmt(call("HAL_I2C_Master_Transmit", unary("&", "hi2c1"), "0x50", "buf", "4", "100"), 12),
                        ],
                        line=10,
                        params=[("buf", "uint8_t *")],
                    )
                ],
            )
        )
        self.assertEqual(of_kind(run_extractor("interfacing", unit), "AggregateTransmit"), [])

    def test_payload_positions_come_from_conventions(self) -> None:
        unit = load_unit(
            unit_doc(
                "tx.c",
                types=["port_t", "frame_t"],
                functions=[
                    function(
                        "send_frame",
                        [expr_stmt(call("uart_write", unary("&", "port"), unary("&", "frame")), 2)],
                        params=[("port", "port_t"), ("frame", "frame_t")],
                    )
                ],
            )
        )
        everything = of_kind(run_extractor("interfacing", unit), "AggregateTransmit")
        self.assertEqual([f.subject for f in everything], ["port", "frame"])

        conventions = Conventions(transmit_payload_args=(("uart_write", 1),))
        only_payload = of_kind(run_extractor("interfacing", unit, conventions=conventions), "AggregateTransmit")
        self.assertEqual([f.subject for f in only_payload], ["frame"])


class NarrowingCastTests(unittest.TestCase):
    def test_unchecked_narrowing(self) -> None:
        unit = load_unit(
            unit_doc(
                "pack.c",
                functions=[
                    function(
                        "pack",
                        [
                            expr_stmt(assign("a", cast("uint8_t", "value")), 2),
                            expr_stmt(assign("b", cast("uint8_t", binary("&", "value", "0xFF"))), 3),
                            expr_stmt(assign("c", cast("uint8_t", binary(">>", "value", "24"))), 4),
                            expr_stmt(assign("e", cast("uint8_t", "300")), 5),
                            if_stmt(binary(">", "value", "65535"), [ret(6)], 6),
                            expr_stmt(assign("d", cast("uint16_t", "value")), 7),
                        ],
                        params=[("value", "uint32_t")],
                    )
                ],
            )
        )
        (fact,) = of_kind(run_extractor("interfacing", unit), "UncheckedNarrowingCast")
        self.assertEqual(fact.subject, "value")
        self.assertEqual(fact.details["from_width"], 32)
        self.assertEqual(fact.details["to_width"], 8)
        self.assertEqual(fact.details["to_type"], "uint8_t")
        self.assertEqual(fact.span.line_start, 2)


class RegisterAccessTests(unittest.TestCase):
    def setUp(self) -> None:
        unit = load_unit(
            unit_doc(
                "uart.c",
                declarations=[
                    global_decl("UART0", "volatile uart_regs_t *", 1, storage="extern"),
                    global_decl("UART_DR", "uint32_t", 2),
                ],
                functions=[
                    function(
                        "uart_putc",
                        [
                            while_stmt(binary("==", binary("&", member("UART0", "SR"), "0x80"), "0"), [], 11),
                            expr_stmt(assign(member("UART0", "DR"), "c"), 12),
                        ],
                        line=10,
                        end=13,
                        params=[("c", "uint8_t")],
                    ),
                    function(
                        "uart_init",
                        [
                            expr_stmt(assign(member("UART0", "CR1"), "0x2000"), 21),
                            expr_stmt(assign(member("UART0", "CR1"), "0x8", op="|="), 22),
                            expr_stmt(assign(member("UART0", "DR"), "0"), 23),
                            expr_stmt(call("dma_start", unary("&", member("UART0", "DR"))), 24),
                        ],
                        line=20,
                        end=25,
                    ),
                    function(
                        "poke",
                        [
                            expr_stmt(assign(unary("*", cast("volatile uint32_t *", "0x40011004")), "1"), 31),
                            expr_stmt(assign("v", unary("*", cast("uint32_t *", "0x40011008"))), 32),
                            expr_stmt(assign("w", "UART_DR"), 33),
                        ],
                        line=30,
                        end=34,
                    ),
                ],
            )
        )
        self.facts = of_kind(run_extractor("interfacing", unit), "RegisterAccess")

    def by_function(self, name):
        return [fact for fact in self.facts if fact.function == name]

    def test_status_checked_write(self) -> None:
        status, data = self.by_function("uart_putc")
        self.assertEqual((status.subject, status.details["access"]), ("SR", "read"))
        self.assertTrue(status.details["status_register"])
        self.assertEqual(status.details["peripheral"], "UART0")
        self.assertEqual(data.details["field"], "UART0->DR")
        self.assertTrue(data.details["data_register"])
        self.assertTrue(data.details["status_checked"])
        self.assertTrue(data.details["volatile"])

    def test_configuration_writes(self) -> None:
        overwrite, rmw, data = self.by_function("uart_init")
        self.assertEqual((overwrite.details["access"], overwrite.details["op"]), ("write", "="))
        self.assertEqual((rmw.details["access"], rmw.details["op"]), ("rmw", "|="))
        self.assertFalse(overwrite.details["data_register"])
        self.assertFalse(data.details["status_checked"])

    def test_address_taken_is_not_an_access(self) -> None:
        self.assertFalse([f for f in self.facts if f.span.line_start == 24])

    def test_literal_addresses_and_plain_globals(self) -> None:
        volatile_write, plain_read, named = self.by_function("poke")
        self.assertEqual(volatile_write.subject, "0x40011004")
        self.assertTrue(volatile_write.details["volatile"])
        self.assertIsNone(volatile_write.details["peripheral"])
        self.assertEqual(plain_read.details["access"], "read")
        self.assertIs(plain_read.details["volatile"], False)
        self.assertEqual(named.subject, "UART_DR")
        self.assertIs(named.details["volatile"], False)
        self.assertTrue(named.details["data_register"])


if __name__ == "__main__":
    unittest.main()
