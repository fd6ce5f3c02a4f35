"""Tests for webhook trigger parsing and signature verification.

**Validates: label and comment triggers, pull request comments ignored,
and HMAC signature checks**
"""

import hashlib
import hmac
from typing import Any, Dict

import pytest
from hypothesis import given, settings, strategies as st

from havoc.webhook.handler import WebhookHandler, is_havoc_command
from havoc.webhook.models import TriggerSource


def _make_payload(**overrides) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "issue": {
            "number": 42,
            "title": "Crash on start",
            "body": None,
            "labels": [{"name": "bug"}, {"name": "havoc"}],
        },
        "repository": {"name": "app", "owner": {"login": "octo"}},
        "sender": {"login": "alice"},
        "installation": {"id": 99},
    }
    payload.update(overrides)
    return payload


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Label triggers
# ---------------------------------------------------------------------------


class TestLabelTrigger:
    def test_added_havoc_label(self):
        payload = _make_payload(action="labeled", label={"name": "Havoc"})

        trigger = WebhookHandler().parse_trigger("issues", payload)

        assert trigger is not None
        assert trigger.source == TriggerSource.LABEL
        assert trigger.issue_id == "octo/app#42"
        assert trigger.full_repository == "octo/app"
        assert trigger.body == ""
        assert trigger.labels == ["bug", "havoc"]
        assert trigger.sender == "alice"
        assert trigger.installation_id == 99

    def test_other_label_added_is_ignored(self):
        payload = _make_payload(action="labeled", label={"name": "bug"})

        assert WebhookHandler().parse_trigger("issues", payload) is None

    def test_falls_back_to_issue_labels(self):
        payload = _make_payload(action="labeled")

        assert WebhookHandler().parse_trigger("issues", payload) is not None

    def test_other_actions_are_ignored(self):
        payload = _make_payload(action="opened")

        assert WebhookHandler().parse_trigger("issues", payload) is None


# ---------------------------------------------------------------------------
# Comment triggers
# ---------------------------------------------------------------------------


class TestCommentTrigger:
    @pytest.mark.parametrize("body", ["/havoc", "  /HAVOC run ", "/havoc run please"])
    def test_commands(self, body):
        payload = _make_payload(action="created", comment={"body": body})

        trigger = WebhookHandler().parse_trigger("issue_comment", payload)

        assert trigger is not None
        assert trigger.source == TriggerSource.COMMENT

    @pytest.mark.parametrize("body", ["havoc", "please /havoc", "/havocking"])
    def test_other_comments(self, body):
        payload = _make_payload(action="created", comment={"body": body})

        assert WebhookHandler().parse_trigger("issue_comment", payload) is None

    def test_pull_request_comments_are_ignored(self):
        payload = _make_payload(action="created", comment={"body": "/havoc"})
        payload["issue"]["pull_request"] = {"url": "https://api.github.com/..."}

        assert WebhookHandler().parse_trigger("issue_comment", payload) is None

    def test_edited_comments_are_ignored(self):
        payload = _make_payload(action="edited", comment={"body": "/havoc"})

        assert WebhookHandler().parse_trigger("issue_comment", payload) is None


class TestMalformedPayloads:
    def test_missing_repository(self):
        payload = _make_payload(action="labeled", label={"name": "havoc"})
        del payload["repository"]

        assert WebhookHandler().parse_trigger("issues", payload) is None

    def test_invalid_issue_number(self):
        payload = _make_payload(action="labeled", label={"name": "havoc"})
        payload["issue"]["number"] = "42"

        assert WebhookHandler().parse_trigger("issues", payload) is None

    def test_non_dict_payload(self):
        assert WebhookHandler().parse_trigger("issues", ["not", "a", "dict"]) is None

    def test_unrelated_event(self):
        assert WebhookHandler().parse_trigger("push", _make_payload()) is None


@given(st.text(max_size=40))
@settings(max_examples=100)
def test_run_command_with_any_suffix_triggers(suffix):
    assert is_havoc_command("/havoc run" + suffix)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class TestVerifySignature:
    def test_no_secret_accepts_anything(self):
        assert WebhookHandler().verify_signature(b"{}", None)

    def test_valid_signature(self):
        body = b'{"action": "labeled"}'

        assert WebhookHandler("s3cret").verify_signature(body, _sign("s3cret", body))

    def test_wrong_secret(self):
        body = b"{}"

        assert not WebhookHandler("s3cret").verify_signature(body, _sign("other", body))

    def test_missing_or_malformed_header(self):
        handler = WebhookHandler("s3cret")

        assert not handler.verify_signature(b"{}", None)
        assert not handler.verify_signature(b"{}", "sha1=abc")
