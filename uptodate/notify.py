"""
Notification senders: Telegram bot, ntfy.sh topic and generic outgoing webhook.

Every sender exposes send(text) and raises NotificationError when delivery
fails. Nothing is retried; the next cycle sends its own report.
"""

import html
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import requests

from .errors import NotificationError

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}

TITLE = 'Up-to-date'


@dataclass(frozen=True)
class NotifyRef:
    """One line of a report: container name and short image id or failure reason."""
    name: str
    info: str = ''


def build_notification_message(updated: Sequence[NotifyRef], failed: Sequence[NotifyRef],
                               as_html: bool = True) -> str:
    """
    Render the end-of-cycle report.

    Updated entries are one line each; failure reasons go on their own line
    under the container name, separated by a blank line between entries.
    """
    esc = html.escape if as_html else (lambda s: s)
    parts: List[str] = [f"<b>{TITLE}</b>" if as_html else TITLE]

    if updated:
        parts.append("\n\n✅ Updated:\n")
        for ref in updated:
            name = esc(ref.name or '<noname>')
            line = f"\n• <code>{name}</code>" if as_html else f"\n• {name}"
            info = ref.info.strip()
            if info:
                line += f" – <code>{esc(info)}</code>" if as_html else f" – {info}"
            parts.append(line)

    if failed:
        parts.append("\n\n❌ Failed:\n")
        for i, ref in enumerate(failed):
            if i > 0:
                parts.append("\n")
            name = esc(ref.name or '<noname>')
            parts.append(f"\n• <code>{name}</code>" if as_html else f"\n• {name}")
            info = ref.info.strip()
            if info:
                parts.append(f"\n<pre>{esc(info)}</pre>" if as_html else f"\n{info}")

    return ''.join(parts)


class Notifier:
    """Base class; subclasses deliver a rendered report."""

    name = 'notifier'
    as_html = False

    def send(self, text: str) -> None:
        raise NotImplementedError

    def send_report(self, updated: Sequence[NotifyRef], failed: Sequence[NotifyRef]) -> None:
        self.send(build_notification_message(updated, failed, as_html=self.as_html))

    def _post(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = requests.request(method, url, timeout=_REQUEST_TIMEOUT, **kwargs)
            response.raise_for_status()
            return response
        except requests.HTTPError as e:
            body = e.response.text[:1024].strip() if e.response is not None else ''
            raise NotificationError(f"{self.name}: {e} {body}".strip()) from e
        except requests.RequestException as e:
            raise NotificationError(f"{self.name}: {e}") from e


class TelegramNotifier(Notifier):
    """Sends HTML-formatted messages through the Telegram Bot API."""

    name = 'telegram'
    as_html = True

    def __init__(self, token: str, chat_id: str):
        self.token = token
        self.chat_id = chat_id

    def send(self, text: str) -> None:
        self._post(
            'POST',
            f"https://api.telegram.org/bot{self.token}/sendMessage",
            data={'chat_id': self.chat_id, 'text': text, 'parse_mode': 'HTML'},
        )
        logger.info("telegram: notification sent")


class NtfyNotifier(Notifier):
    """
    POSTs a plain-text notification to an ntfy topic URL.

    priority is one of min / low / default / high / urgent; anything else
    falls back to default.
    """

    name = 'ntfy'

    def __init__(self, url: str, priority: str = 'default', headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.priority = priority if priority in _NTFY_PRIORITIES else 'default'
        self.headers = dict(headers or {})

    def send(self, text: str) -> None:
        headers: Dict[str, str] = {
            'Title': TITLE,
            'Priority': self.priority,
            'Tags': 'package',
            'Content-Type': 'text/plain',
        }
        headers.update(self.headers)
        self._post('POST', self.url, data=text.encode('utf-8'), headers=headers)
        logger.info("ntfy: notification sent")


class WebhookNotifier(Notifier):
    """POST (or PUT) the report as JSON to a webhook URL."""

    name = 'webhook'

    def __init__(self, url: str, method: str = 'POST', headers: Optional[Dict[str, str]] = None):
        self.url = url
        method = (method or 'POST').upper()
        self.method = method if method in ('POST', 'PUT') else 'POST'
        self.headers = dict(headers or {})

    def send(self, text: str) -> None:
        self._send_json({'text': text})

    def send_report(self, updated: Sequence[NotifyRef], failed: Sequence[NotifyRef]) -> None:
        self._send_json({
            'text': build_notification_message(updated, failed, as_html=False),
            'updated': [{'name': r.name, 'image': r.info} for r in updated],
            'failed': [{'name': r.name, 'error': r.info} for r in failed],
        })

    def _send_json(self, payload: Dict[str, object]) -> None:
        headers = {'Content-Type': 'application/json'}
        headers.update(self.headers)
        self._post(self.method, self.url, data=json.dumps(payload).encode('utf-8'), headers=headers)
        logger.info("webhook: notification sent")


class MultiNotifier:
    """Fans a report out to every configured sender."""

    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers = list(notifiers)

    def __bool__(self) -> bool:
        return bool(self.notifiers)

    def notify(self, updated: Sequence[NotifyRef], failed: Sequence[NotifyRef]) -> None:
        """
        Send the report through each sender.

        All senders are attempted; failures are combined into a single
        NotificationError raised at the end.
        """
        errors = []
        for notifier in self.notifiers:
            try:
                notifier.send_report(updated, failed)
            except NotificationError as e:
                errors.append(str(e))
        if errors:
            raise NotificationError('; '.join(errors))


def notifiers_from_env(environ=None, log: Optional[logging.Logger] = None) -> MultiNotifier:
    """
    Build senders from environment variables.

    TELEGRAM_API_TOKEN + TELEGRAM_CHAT_ID, NTFY_URL (+ NTFY_PRIORITY),
    WEBHOOK_URL (+ WEBHOOK_METHOD). A Telegram token without a chat id
    disables Telegram with a warning.
    """
    environ = os.environ if environ is None else environ
    log = log or logger
    notifiers: List[Notifier] = []

    token = (environ.get('TELEGRAM_API_TOKEN') or '').strip()
    if token:
        chat_id = (environ.get('TELEGRAM_CHAT_ID') or '').strip()
        if chat_id:
            notifiers.append(TelegramNotifier(token, chat_id))
        else:
            log.warning("telegram notifications disabled: TELEGRAM_API_TOKEN set but TELEGRAM_CHAT_ID is missing")

    ntfy_url = (environ.get('NTFY_URL') or '').strip()
    if ntfy_url:
        notifiers.append(NtfyNotifier(ntfy_url, priority=(environ.get('NTFY_PRIORITY') or 'default').strip()))

    webhook_url = (environ.get('WEBHOOK_URL') or '').strip()
    if webhook_url:
        notifiers.append(WebhookNotifier(webhook_url, method=environ.get('WEBHOOK_METHOD') or 'POST'))

    for notifier in notifiers:
        log.info(f"{notifier.name} notifications enabled")
    return MultiNotifier(notifiers)
