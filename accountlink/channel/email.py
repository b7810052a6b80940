"""
Verification Channel (Deadline-Bounded)
---------------------------------------
Delivers {toAddress, code, mode} to the e-mail service over HTTP. The caller
keeps its challenge row uncommitted until send() returns, so a delivery
failure must raise rather than return quietly.
"""

from __future__ import annotations

import time

import httpx

from accountlink.core.errors import CollaboratorError
from accountlink.observability.logging import log
from accountlink.settings import settings


class VerificationChannel:
    def send(self, to_address: str, code: str, mode: str) -> None:
        raise NotImplementedError


def build_email_payload(to_address: str, code: str, mode: str) -> dict:
    payload = {"toAddress": to_address, "code": code, "mode": str(mode)}
    if settings.EMAIL_FROM:
        payload["from"] = settings.EMAIL_FROM
    return payload


class HttpVerificationChannel(VerificationChannel):
    def __init__(self, url: str = "", api_key: str = "", *, deadline_sec: float = 0.0, max_retries: int = -1):
        self.url = url or settings.EMAIL_SERVICE_URL
        self.api_key = api_key or settings.EMAIL_SERVICE_API_KEY
        self.deadline_sec = float(deadline_sec or settings.EMAIL_DEADLINE_SEC or 6.0)
        self.max_retries = int(max_retries if max_retries >= 0 else settings.EMAIL_SYNC_RETRIES)

    def send(self, to_address: str, code: str, mode: str) -> None:
        if not self.url:
            log(event="verification_email_skipped_no_url", toAddress=to_address)
            raise CollaboratorError("verification_channel", "EMAIL_SERVICE_URL is not set")

        t0 = time.monotonic()
        payload = build_email_payload(to_address, code, mode)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        attempt = 0
        last_err = None
        while attempt <= self.max_retries:
            attempt += 1
            remaining = self.deadline_sec - (time.monotonic() - t0)
            if remaining <= 0:
                break

            # Per-attempt timeout: never exceed remaining time and never exceed configured timeout.
            per_try_timeout = min(float(settings.EMAIL_TIMEOUT_SEC or 5), max(0.5, remaining))
            try:
                with httpx.Client(timeout=per_try_timeout) as client:
                    resp = client.post(self.url, json=payload, headers=headers)
                if 200 <= resp.status_code < 300:
                    log(
                        event="verification_email_sent",
                        toAddress=to_address,
                        mode=str(mode),
                        attempt=attempt,
                        elapsedMs=int((time.monotonic() - t0) * 1000),
                    )
                    return
                last_err = f"non_2xx:{resp.status_code}"
                log(
                    event="verification_email_non2xx",
                    toAddress=to_address,
                    statusCode=int(resp.status_code),
                    responseText=(resp.text or "")[:300],
                )
                # 4xx other than 429 will not get better on retry
                if 400 <= resp.status_code < 500 and resp.status_code != 429:
                    break
            except httpx.HTTPError as e:
                last_err = f"{type(e).__name__}:{str(e)[:200]}"
                log(event="verification_email_exception", toAddress=to_address, error=last_err)

            # backoff lightly but respect deadline
            remaining2 = self.deadline_sec - (time.monotonic() - t0)
            if remaining2 <= 0:
                break
            time.sleep(min(0.15, max(0.0, remaining2)))

        log(
            event="verification_email_failed",
            toAddress=to_address,
            elapsedMs=int((time.monotonic() - t0) * 1000),
            lastError=str(last_err or "deadline"),
        )
        raise CollaboratorError("verification_channel", str(last_err or "deadline"))
