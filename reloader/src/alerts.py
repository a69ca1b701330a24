from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any

LOGGER = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 10
UPGRADE_WEBHOOK_BODY = {"webhook": "update successful"}


class DeliveryError(RuntimeError):
    """Raised when a webhook endpoint cannot be reached or rejects the request."""


def post_json(url: str, payload: dict[str, Any]) -> str:
    """POST *payload* as JSON and return the response body."""
    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(  # noqa: S310
        url=url,
        data=data,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(request, timeout=HTTP_TIMEOUT_SECONDS) as resp:  # noqa: S310
            return resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        raise DeliveryError(f"HTTP status {exc.code} from {url}") from exc
    except urllib.error.URLError as exc:
        raise DeliveryError(f"{url}: {exc.reason}") from exc


def alert_payload(sink: str, message: str, additional_info: str = "") -> dict[str, Any]:
    """Shape an alert message for the configured sink.

    Messages use Slack-style ``*bold*`` markup; Teams expects ``**bold**``.
    """
    text = f"{message} : {additional_info}" if additional_info else message
    if sink == "teams":
        return {"text": text.replace("*", "**")}
    if sink in {"slack", "gchat"}:
        return {"text": text}
    return {"message": text}


def send_upgrade_webhook(url: str) -> None:
    body = post_json(url, UPGRADE_WEBHOOK_BODY)
    LOGGER.info("Upgrade webhook to %s answered: %s", url, body)


def send_alert(url: str, sink: str, message: str, additional_info: str = "") -> None:
    post_json(url, alert_payload(sink, message, additional_info))
    LOGGER.info("Sent %s reload alert", sink)
