"""GitHub webhook handler.

Parses webhook deliveries into RunTriggers. Two events start a run:

- `issues` with action `labeled`, when the added label is `havoc` or
  `havoc-run` (case-insensitive)
- `issue_comment` with action `created`, when the comment is `/havoc`,
  `/havoc run` or starts with `/havoc run`

Everything else, including comments on pull requests, is ignored.
When a webhook secret is configured, deliveries must carry a valid
X-Hub-Signature-256 header.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

from havoc.webhook.models import RunTrigger, TriggerSource


logger = logging.getLogger(__name__)

TRIGGER_LABELS = {"havoc", "havoc-run"}
TRIGGER_COMMANDS = {"/havoc", "/havoc run"}
RUN_COMMAND_PREFIX = "/havoc run"
SIGNATURE_PREFIX = "sha256="


def is_trigger_label(name: str) -> bool:
    return name.strip().lower() in TRIGGER_LABELS


def is_havoc_command(body: str) -> bool:
    """Check whether a comment body invokes Havoc."""
    text = body.strip().lower()
    return text in TRIGGER_COMMANDS or text.startswith(RUN_COMMAND_PREFIX)


class WebhookHandler:
    """Parser for GitHub webhook deliveries.

    Attributes:
        secret: Webhook secret used to verify signatures, or None to accept
                unsigned deliveries.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check the X-Hub-Signature-256 header against the raw body.

        Always True when no secret is configured.
        """
        if not self.secret:
            return True
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            return False

        expected = hmac.new(
            self.secret.encode(), body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(SIGNATURE_PREFIX + expected, signature)

    def parse_trigger(
        self, event_name: str, payload: Dict[str, Any]
    ) -> Optional[RunTrigger]:
        """Turn a webhook delivery into a RunTrigger.

        Args:
            event_name: Value of the X-GitHub-Event header.
            payload: Parsed JSON body.

        Returns:
            RunTrigger if the delivery should start a run, None otherwise.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        action = payload.get("action")

        if event_name == "issues" and action == "labeled":
            label = payload.get("label")
            if isinstance(label, dict):
                triggered = is_trigger_label(str(label.get("name", "")))
            else:
                issue_labels = self._extract_labels(
                    (payload.get("issue") or {}).get("labels")
                )
                triggered = any(is_trigger_label(name) for name in issue_labels)
            if not triggered:
                return None
            return self._build_trigger(payload, TriggerSource.LABEL)

        if event_name == "issue_comment" and action == "created":
            issue = payload.get("issue")
            if isinstance(issue, dict) and issue.get("pull_request"):
                logger.debug("Ignoring comment on pull request")
                return None
            comment = payload.get("comment")
            body = comment.get("body") if isinstance(comment, dict) else None
            if not isinstance(body, str) or not is_havoc_command(body):
                return None
            return self._build_trigger(payload, TriggerSource.COMMENT)

        logger.debug(
            "Ignoring webhook event: event=%s, action=%s", event_name, action
        )
        return None

    def _build_trigger(
        self, payload: Dict[str, Any], source: TriggerSource
    ) -> Optional[RunTrigger]:
        issue = payload.get("issue")
        repository = payload.get("repository")
        if not isinstance(issue, dict) or not isinstance(repository, dict):
            logger.warning("Webhook payload missing issue or repository")
            return None

        issue_number = issue.get("number")
        if not isinstance(issue_number, int) or issue_number <= 0:
            logger.warning("Invalid issue number: %s", issue_number)
            return None

        owner = self._extract_login(repository.get("owner"))
        repo = repository.get("name")
        if not owner or not isinstance(repo, str) or not repo.strip():
            logger.warning("Invalid repository in webhook payload")
            return None

        installation = payload.get("installation")
        installation_id = (
            installation.get("id") if isinstance(installation, dict) else None
        )

        trigger = RunTrigger(
            source=source,
            owner=owner,
            repo=repo.strip(),
            issue_number=issue_number,
            title=issue.get("title") or "",
            body=issue.get("body") or "",
            labels=self._extract_labels(issue.get("labels")),
            sender=self._extract_login(payload.get("sender")),
            installation_id=installation_id,
        )

        logger.info(
            "Parsed run trigger: source=%s, issue=%s",
            source.value,
            trigger.issue_id,
        )
        return trigger

    @staticmethod
    def _extract_labels(labels_data: Any) -> List[str]:
        if not isinstance(labels_data, list):
            return []

        labels = []
        for label in labels_data:
            name = label.get("name") if isinstance(label, dict) else label
            if isinstance(name, str) and name.strip():
                labels.append(name.strip())
        return labels

    @staticmethod
    def _extract_login(user_data: Any) -> Optional[str]:
        if not isinstance(user_data, dict):
            return None
        login = user_data.get("login")
        if not isinstance(login, str) or not login.strip():
            return None
        return login.strip()
