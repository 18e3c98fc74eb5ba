"""Gmail API sender authenticated with an OAuth2 refresh token."""

import base64
import logging
import time
from dataclasses import dataclass
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
PERMANENT_TOKEN_ERRORS = ("invalid_grant", "invalid_request")
REFRESH_TOKEN_SOLUTION = "Generate a new refresh token using OAuth Playground"


@dataclass
class GmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    permanent_failure: bool = False
    attempts: int = 0
    solution: Optional[str] = None

    def to_dict(self):
        data = {"success": self.success, "attempts": self.attempts}
        if self.message_id:
            data["message_id"] = self.message_id
        if self.error:
            data["error"] = self.error
        if self.permanent_failure:
            data["permanent_failure"] = True
        if self.solution:
            data["solution"] = self.solution
        return data


class TokenRefreshError(Exception):
    def __init__(self, code: str, description: str):
        super().__init__(description or code)
        self.code = code
        self.description = description

    @property
    def permanent(self) -> bool:
        return self.code in PERMANENT_TOKEN_ERRORS


class GmailApiError(Exception):
    def __init__(self, message: str, code=None, status: str = ""):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    @property
    def unauthenticated(self) -> bool:
        return self.code == 401 or self.status == "UNAUTHENTICATED"


def build_raw_message(sender: str, to: str, subject: str, text: str, html: str) -> str:
    """Build a multipart/alternative message encoded as unpadded base64url."""
    message = MIMEMultipart("alternative")
    message["From"] = sender
    message["To"] = to
    message["Subject"] = Header(subject, "utf-8")
    message.attach(MIMEText(text, "plain", "utf-8"))
    message.attach(MIMEText(html, "html", "utf-8"))
    encoded = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")
    return encoded.rstrip("=")


class GmailSender:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: int = 2,
        timeout: int = 15,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.session = session or requests.Session()
        self.sleep = sleep
        self.max_retries = max_retries
        self.timeout = timeout

    def refresh_access_token(self) -> str:
        response = self.session.post(
            TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=self.timeout,
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.ok or not data.get("access_token"):
            raise TokenRefreshError(
                str(data.get("error") or f"http_{response.status_code}"),
                str(data.get("error_description") or response.text or ""),
            )
        return data["access_token"]

    def deliver(self, access_token: str, raw: str) -> str:
        response = self.session.post(
            SEND_URL,
            json={"raw": raw},
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.ok:
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            raise GmailApiError(
                str(error.get("message") or response.text or response.status_code),
                error.get("code", response.status_code),
                str(error.get("status") or ""),
            )
        return str(data.get("id") or "")

    def send(self, sender: str, to: str, subject: str, text: str, html: str) -> GmailResult:
        """Send one message, retrying transient token and auth failures.

        ``invalid_grant``/``invalid_request`` token errors are permanent and
        returned at once. Other token errors, Gmail 401s and transport errors
        are retried up to ``max_retries`` times with a linear backoff of one
        second per retry. Any other Gmail error is returned without retry.
        """
        raw = build_raw_message(sender, to, subject, text, html)
        retry_count = 0
        while True:
            attempts = retry_count + 1
            retryable_error = None
            try:
                access_token = self.refresh_access_token()
                message_id = self.deliver(access_token, raw)
                logger.info("Gmail message %s sent after %s attempt(s)", message_id, attempts)
                return GmailResult(success=True, message_id=message_id, attempts=attempts)
            except TokenRefreshError as exc:
                if exc.permanent:
                    logger.error("Gmail refresh token rejected: %s", exc.code)
                    return GmailResult(
                        success=False,
                        error=f"Refresh token expired or invalid: {exc.description or exc.code}",
                        permanent_failure=True,
                        attempts=attempts,
                        solution=REFRESH_TOKEN_SOLUTION,
                    )
                retryable_error = f"Token refresh failed: {exc.description or exc.code}"
            except GmailApiError as exc:
                if not exc.unauthenticated:
                    logger.error("Gmail API error: %s", exc.message)
                    return GmailResult(
                        success=False,
                        error=f"Gmail API error: {exc.message}",
                        attempts=attempts,
                    )
                retryable_error = f"Gmail API error: {exc.message}"
            except requests.RequestException as exc:
                retryable_error = str(exc)

            if retry_count >= self.max_retries:
                logger.error("Gmail send failed after %s attempts: %s", attempts, retryable_error)
                return GmailResult(success=False, error=retryable_error, attempts=attempts)

            retry_count += 1
            logger.warning(
                "Gmail send attempt %s failed (%s), retrying", attempts, retryable_error
            )
            self.sleep(1 * retry_count)
