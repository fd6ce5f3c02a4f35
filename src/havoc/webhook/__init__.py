"""GitHub webhook handling.

Deliveries that start a run:
- issues.labeled with a `havoc` or `havoc-run` label
- issue_comment.created with a `/havoc` command
"""

from havoc.webhook.handler import WebhookHandler, is_havoc_command
from havoc.webhook.models import RunTrigger, TriggerSource

__all__ = [
    "RunTrigger",
    "TriggerSource",
    "WebhookHandler",
    "is_havoc_command",
]
