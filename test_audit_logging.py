"""
Tests for audit logging.

This test suite verifies that:
1. Audit events are logged with the expected structure
2. Credential values are never logged
3. Severity filtering works correctly
4. OAuth endpoints emit events for their security decisions
"""

import asyncio
import json
import os
import unittest
from io import StringIO
from unittest.mock import patch

from audit_logger import (
    REDACTED_DESCRIPTION,
    AuditAction,
    AuditLogger,
    AuditSeverity,
    get_audit_logger,
    redact_description,
    reset_audit_logger,
    strip_sensitive_fields,
)


def audit_lines(output: str):
    """Parse ``AUDIT: {json}`` lines out of captured stdout."""
    return [json.loads(line[len("AUDIT: "):]) for line in output.splitlines() if line.startswith("AUDIT: ")]


class TestAuditLogger(unittest.TestCase):
    """Test the AuditLogger class."""

    def setUp(self):
        self.env = patch.dict(os.environ, {
            "AUDIT_LOG_ENABLED": "true",
            "AUDIT_LOG_LEVEL": "MEDIUM",
            "AUDIT_LOG_INCLUDE_LOW": "false",
        })
        self.env.start()
        self.addCleanup(self.env.stop)

    def test_logger_enabled_by_default(self):
        del os.environ["AUDIT_LOG_ENABLED"]
        self.assertTrue(AuditLogger().enabled)

    def test_logger_can_be_disabled(self):
        os.environ["AUDIT_LOG_ENABLED"] = "false"
        logger = AuditLogger()
        self.assertFalse(logger.enabled)
        self.assertFalse(logger.should_log(AuditSeverity.CRITICAL))

    def test_severity_filtering(self):
        os.environ["AUDIT_LOG_LEVEL"] = "HIGH"
        logger = AuditLogger()

        self.assertTrue(logger.should_log(AuditSeverity.CRITICAL))
        self.assertTrue(logger.should_log(AuditSeverity.HIGH))
        self.assertFalse(logger.should_log(AuditSeverity.MEDIUM))
        self.assertFalse(logger.should_log(AuditSeverity.LOW))

    def test_low_severity_needs_opt_in(self):
        self.assertFalse(AuditLogger().should_log(AuditSeverity.LOW))

        os.environ["AUDIT_LOG_INCLUDE_LOW"] = "true"
        self.assertTrue(AuditLogger().should_log(AuditSeverity.LOW))

    def test_invalid_level_defaults_to_medium(self):
        os.environ["AUDIT_LOG_LEVEL"] = "LOUD"
        self.assertEqual(AuditLogger().min_severity, AuditSeverity.MEDIUM)

    def test_audit_event_structure(self):
        with patch('sys.stdout', new=StringIO()) as fake_out:
            logger = AuditLogger()
            logger.log_event(
                event_type="tokens_issued",
                severity=AuditSeverity.HIGH,
                action=AuditAction.CREATE,
                status="success",
                client_id="c1",
                user_id="u1",
                grant_type="authorization_code",
                source_ip="10.0.0.1"
            )

        events = audit_lines(fake_out.getvalue())
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event["event_type"], "tokens_issued")
        self.assertEqual(event["severity"], "HIGH")
        self.assertEqual(event["action"], "create")
        self.assertEqual(event["status"], "success")
        self.assertEqual(event["client_id"], "c1")
        self.assertEqual(event["grant_type"], "authorization_code")
        self.assertEqual(event["source_ip"], "10.0.0.1")
        self.assertIn("timestamp", event)
        self.assertNotIn("error", event)

    def test_filtered_event_not_written(self):
        os.environ["AUDIT_LOG_LEVEL"] = "CRITICAL"
        with patch('sys.stdout', new=StringIO()) as fake_out:
            AuditLogger().log_event("authorization_denied", AuditSeverity.MEDIUM, AuditAction.AUTH, "failure")

        self.assertEqual(audit_lines(fake_out.getvalue()), [])

    def test_sensitive_additional_fields_dropped(self):
        with patch('sys.stdout', new=StringIO()) as fake_out:
            AuditLogger().log_event(
                event_type="tokens_issued",
                severity=AuditSeverity.HIGH,
                action=AuditAction.CREATE,
                status="success",
                additional_safe_fields={
                    "scope": "read",
                    "access_token": "AT-SECRET-VALUE",
                    "Refresh_Token": "RT-SECRET-VALUE",
                    "client_secret": "s1",
                    "code_verifier": "VERIFIER-VALUE",
                }
            )

        output = fake_out.getvalue()
        self.assertNotIn("AT-SECRET-VALUE", output)
        self.assertNotIn("RT-SECRET-VALUE", output)
        self.assertNotIn("VERIFIER-VALUE", output)
        self.assertEqual(audit_lines(output)[0]["scope"], "read")

    def test_handlers_replaced_not_stacked(self):
        with patch('sys.stdout', new=StringIO()) as fake_out:
            AuditLogger()
            logger = AuditLogger()
            logger.log_event("token_revoked", AuditSeverity.CRITICAL, AuditAction.DELETE, "success")

        self.assertEqual(len(audit_lines(fake_out.getvalue())), 1)


class TestSanitization(unittest.TestCase):
    """Test credential redaction helpers."""

    def test_strip_sensitive_fields(self):
        event = {"client_id": "c1", "token": "t", "Authorization": "Bearer x", "code": "abc"}
        self.assertEqual(strip_sensitive_fields(event), {"client_id": "c1"})

    def test_error_message_with_credential_redacted(self):
        message = redact_description("request failed: code=abc123")
        self.assertNotIn("abc123", message)
        self.assertEqual(message, REDACTED_DESCRIPTION)

    def test_bearer_value_redacted(self):
        message = redact_description("Header was Bearer abc.def")
        self.assertNotIn("abc.def", message)

    def test_long_message_truncated(self):
        message = redact_description("x" * 1000)
        self.assertEqual(len(message), 500)
        self.assertTrue(message.endswith("..."))

    def test_plain_message_kept(self):
        message = "redirect_uri does not match authorization request"
        self.assertEqual(redact_description(message), message)


class TestGlobalLogger(unittest.TestCase):
    """Test the process-wide logger accessor."""

    def tearDown(self):
        reset_audit_logger()

    def test_singleton(self):
        reset_audit_logger()
        self.assertIs(get_audit_logger(), get_audit_logger())

    def test_reset_rereads_environment(self):
        with patch.dict(os.environ, {"AUDIT_LOG_LEVEL": "CRITICAL"}):
            reset_audit_logger()
            self.assertEqual(get_audit_logger().min_severity, AuditSeverity.CRITICAL)

        with patch.dict(os.environ, {"AUDIT_LOG_LEVEL": "HIGH"}):
            reset_audit_logger()
            self.assertEqual(get_audit_logger().min_severity, AuditSeverity.HIGH)


class TestEndpointAuditing(unittest.TestCase):
    """OAuth endpoints audit their decisions without leaking credentials."""

    def setUp(self):
        self.env = patch.dict(os.environ, {"AUDIT_LOG_ENABLED": "true", "AUDIT_LOG_LEVEL": "MEDIUM"})
        self.env.start()
        self.addCleanup(self.env.stop)
        self.addCleanup(reset_audit_logger)

    def _endpoints(self):
        from client_registry import Client, ClientRegistry
        from credential_store import InMemoryCredentialStore
        from oauth_endpoints import OAuthEndpoints
        from oauth_token_manager import OAuthTokenManager

        registry = ClientRegistry()
        registry.register(Client.create("c1", "s1", ["https://a/cb"], ["read"]))
        store = InMemoryCredentialStore()
        return OAuthEndpoints(registry, store, OAuthTokenManager(store))

    def test_full_flow_events(self):
        from oauth_endpoints import OAuthError

        with patch('sys.stdout', new=StringIO()) as fake_out:
            reset_audit_logger()
            endpoints = self._endpoints()

            code = asyncio.run(endpoints.handle_authorize({
                "response_type": "code", "client_id": "c1",
                "redirect_uri": "https://a/cb", "scope": "read"
            }, "u1"))["code"]
            params = {"grant_type": "authorization_code", "code": code, "redirect_uri": "https://a/cb",
                      "client_id": "c1", "client_secret": "s1"}
            tokens = asyncio.run(endpoints.handle_token(params))
            with self.assertRaises(OAuthError):
                asyncio.run(endpoints.handle_token(params))
            asyncio.run(endpoints.handle_revoke({
                "token": tokens["access_token"], "client_id": "c1", "client_secret": "s1"
            }))

        output = fake_out.getvalue()
        event_types = [e["event_type"] for e in audit_lines(output)]
        self.assertEqual(
            event_types,
            ["client_registered", "authorization_granted", "tokens_issued", "grant_rejected", "token_revoked"]
        )

        for secret in (code, tokens["access_token"], tokens["refresh_token"], "s1"):
            self.assertNotIn(secret, output)

    def test_failed_client_authentication_audited(self):
        from oauth_endpoints import OAuthError

        with patch('sys.stdout', new=StringIO()) as fake_out:
            reset_audit_logger()
            endpoints = self._endpoints()
            with self.assertRaises(OAuthError):
                asyncio.run(endpoints.handle_token({
                    "grant_type": "refresh_token", "refresh_token": "x",
                    "client_id": "c1", "client_secret": "wrong-secret-value"
                }))

        output = fake_out.getvalue()
        events = audit_lines(output)
        self.assertEqual(events[-1]["event_type"], "client_authentication_failed")
        self.assertEqual(events[-1]["client_id"], "c1")
        self.assertNotIn("wrong-secret-value", output)


if __name__ == "__main__":
    unittest.main()
