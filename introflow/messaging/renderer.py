"""Turns queued message data into outbound text."""

import logging
from collections import defaultdict
from typing import Any

from introflow.core.errors import BusinessRuleViolation
from introflow.db.models import QueuedMessage

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES: dict[str, str] = {
    # Opportunity close loop
    "opportunity_completed_connector": (
        "Your introduction to {subject_name} is complete. "
        "{bounty} credits have been added to your balance."
    ),
    "opportunity_completed_requestor": "Good news: {connector_name} introduced you to {subject_name}.",
    # Connection request close loop
    "connection_request_completed_introducee": "You are now connected with {subject_name}.",
    "connection_request_completed_requestor": "{introducee_name} agreed to connect with {subject_name}.",
    # Offer handshake
    "offer_accepted_connector": (
        "{introducee_name} accepted your offer to introduce them to {subject_name}. "
        "Let me know once the introduction has been made."
    ),
    "offer_declined_connector": (
        "{introducee_name} passed on your offer to introduce them to {subject_name}. Thanks for offering."
    ),
    "offer_confirmation_reminder": (
        "Quick reminder: {introducee_name} is waiting for your introduction to {subject_name}. "
        "Reply once it is done."
    ),
    "offer_completed_connector": (
        "Thanks for introducing {introducee_name} to {subject_name}. "
        "{bounty} credits have been added to your balance."
    ),
    "offer_completed_introducee": "{connector_name} confirmed your introduction to {subject_name}.",
    "offer_expired_connector": "Your offer to introduce {introducee_name} to {subject_name} has expired.",
    # Priority re-engagement
    "re_engagement": "Following up on {primary_name}: {summary} {note}",
}


class MessageRenderer:
    """Template renderer used right before send.

    ``message_data`` either carries ready ``text`` or a ``template`` name
    with ``params``. Missing params render as empty strings.
    """

    def __init__(self, templates: dict[str, str] | None = None):
        self.templates = {**DEFAULT_TEMPLATES, **(templates or {})}

    def render_data(self, data: dict[str, Any]) -> str:
        template_name = data.get("template")
        if template_name is None:
            text = data.get("text")
            if not text:
                raise BusinessRuleViolation("Message has neither text nor template")
            return text
        template = self.templates.get(template_name)
        if template is None:
            raise BusinessRuleViolation(f"Unknown message template: {template_name}")
        return template.format_map(defaultdict(str, data.get("params", {}))).strip()

    def render(self, message: QueuedMessage) -> str:
        """Render a queued message.

        Raises:
            BusinessRuleViolation: Unknown template or nothing to render.
        """
        text = self.render_data(message.message_data)
        logger.debug(f"Rendered message {message.id}: {text[:60]}")
        return text
