"""
Keystore Configuration and Audit Logging Tests
"""

import json
import logging
import unittest

from keystore import SetThreshold, add_key_instruction, generate_keypair
from keystore.config import RuntimeSettings, load_settings
from keystore.logging_config import (
    StructuredFormatter,
    audit_log,
    get_batch_id,
    log_fields,
    set_batch_id,
)

from helpers import Wallet, make_runtime


class CapturingHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestSettings(unittest.TestCase):

    def test_defaults(self):
        settings = load_settings({})
        self.assertEqual(settings.env, "dev")
        self.assertEqual(settings.min_balance, 890880)
        self.assertEqual(settings.verify_layout, "v2")
        self.assertTrue(settings.log_json)
        self.assertEqual(settings.journal_size, 10_000)

    def test_environment_overrides(self):
        settings = load_settings({
            "KEYSTORE_ENV": "prod",
            "KEYSTORE_MIN_BALANCE": "0",
            "KEYSTORE_VERIFY_LAYOUT": "V1",
            "KEYSTORE_LOG_JSON": "false",
        })
        self.assertTrue(settings.is_production())
        self.assertEqual(settings.min_balance, 0)
        self.assertEqual(settings.verify_layout, "v1")
        self.assertFalse(settings.log_json)

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            load_settings({"KEYSTORE_VERIFY_LAYOUT": "v3"})
        with self.assertRaises(ValueError):
            load_settings({"KEYSTORE_MIN_BALANCE": "lots"})
        with self.assertRaises(ValueError):
            RuntimeSettings(env="qa")
        with self.assertRaises(ValueError):
            load_settings({"KEYSTORE_JOURNAL_SIZE": "0"})

    def test_min_balance_flows_to_runtime(self):
        self.assertEqual(make_runtime(min_balance=0).minimum_balance, 0)


class TestAuditLogging(unittest.TestCase):

    def setUp(self):
        self.handler = CapturingHandler()
        self.logger = logging.getLogger("keystore.audit")
        self.logger.addHandler(self.handler)
        self.previous_level = self.logger.level
        self.logger.setLevel(logging.DEBUG)

    def tearDown(self):
        self.logger.removeHandler(self.handler)
        self.logger.setLevel(self.previous_level)

    def events(self, event_type):
        return [log_fields(r) for r in self.handler.records if log_fields(r).get("event_type") == event_type]

    def test_batch_id_context(self):
        batch_id = set_batch_id("batch-123")
        self.assertEqual(batch_id, "batch-123")
        self.assertEqual(get_batch_id(), "batch-123")

    def test_bytes_logged_as_hex(self):
        audit_log.identity_created(b"\x01" * 32, b"\x02" * 32, b"\x03" * 32)
        event = self.events("IDENTITY_CREATED")[-1]
        self.assertEqual(event["identity"], "01" * 32)

    def test_runtime_emits_decisions(self):
        runtime = make_runtime()
        wallet = Wallet(runtime, key_count=1).create()
        wallet.submit(wallet.authorize(SetThreshold(threshold=1), [0]), signers=[])
        wallet.submit(wallet.authorize(SetThreshold(threshold=5), [0]), signers=[])

        decisions = self.events("AUTHORIZATION_DECISION")
        self.assertEqual([d["decision"] for d in decisions], ["COMMITTED", "REJECTED"])
        self.assertEqual(decisions[1]["error_code"], "INVALID_THRESHOLD")
        self.assertEqual(decisions[1]["identity"], wallet.address.hex())

        rejected = self.events("BATCH_REJECTED")
        self.assertEqual(rejected[-1]["instruction_index"], 1)
        self.assertTrue(self.events("BATCH_COMMITTED"))

    def test_security_event_on_key_added_under_quorum(self):
        runtime = make_runtime()
        wallet = Wallet(runtime, key_count=2).create()
        wallet.submit(wallet.authorize(SetThreshold(threshold=2), [0]), signers=[])
        wallet.submit([add_key_instruction(wallet.owner_pk, generate_keypair()[1], "late")])

        events = self.events("SECURITY_EVENT")
        self.assertEqual(events[-1]["security_event"], "OWNER_KEY_ADDED")
        self.assertEqual(events[-1]["threshold"], 2)


class TestStructuredFormatter(unittest.TestCase):

    def test_json_line(self):
        set_batch_id("batch-xyz")
        record = logging.LogRecord("keystore.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.extra_fields = {"event_type": "TEST"}
        data = json.loads(StructuredFormatter().format(record))
        self.assertEqual(data["message"], "hello world")
        self.assertEqual(data["batch_id"], "batch-xyz")
        self.assertEqual(data["event_type"], "TEST")


if __name__ == "__main__":
    unittest.main(verbosity=2)
