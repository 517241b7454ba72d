"""
services/verification/channel.py
One-time-code delivery through Twilio Verify.

The Twilio SDK is synchronous, so calls run in a worker thread behind a
circuit breaker and an asyncio deadline. Transient send failures (5xx,
connection errors) are retried with exponential backoff.
"""

import asyncio
import logging
from typing import Optional

from pybreaker import CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from config.settings import settings
from shared.errors import DeliveryFailed, UpstreamTimeout
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

# Verify error codes that mean "code not accepted" rather than a provider fault
TWILIO_VERIFICATION_NOT_FOUND = 20404
TWILIO_MAX_CHECK_ATTEMPTS = 60202
TWILIO_CHECK_REJECTED_CODES = {60200, TWILIO_VERIFICATION_NOT_FOUND, TWILIO_MAX_CHECK_ATTEMPTS}


def normalize_phone(phone: str, country_code: str = settings.DEFAULT_COUNTRY_CODE) -> str:
    phone = phone.strip().replace(" ", "")
    return phone if phone.startswith("+") else f"{country_code}{phone}"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TwilioRestException):
        return exc.status is not None and exc.status >= 500
    return isinstance(exc, (ConnectionError, OSError))


class CodeChannel:
    """Interface of a one-time-code channel: send a code, check a code."""

    async def send(self, phone: str) -> str:
        raise NotImplementedError

    async def check(self, phone: str, code: str) -> bool:
        raise NotImplementedError


class TwilioVerifyChannel(CodeChannel):
    def __init__(self, config=settings, client: Optional[Client] = None):
        self.config = config
        self._client = client
        self.breaker = circuit_breaker_manager.get_breaker("twilio_verify")

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(self.config.TWILIO_ACCOUNT_SID, self.config.TWILIO_AUTH_TOKEN)
        return self._client

    @property
    def _service(self):
        return self.client.verify.v2.services(self.config.TWILIO_VERIFY_SERVICE_SID)

    def _send_sync(self, phone: str) -> str:
        verification = self._service.verifications.create(to=phone, channel="sms")
        return verification.sid

    def _check_sync(self, phone: str, code: str) -> bool:
        try:
            result = self._service.verification_checks.create(to=phone, code=code)
        except TwilioRestException as e:
            # A wrong/expired code is an answer, not a channel failure
            if e.status == 404 or e.code in TWILIO_CHECK_REJECTED_CODES:
                return False
            raise
        return result.status == "approved"

    async def _call(self, fn, *args):
        return await asyncio.to_thread(self.breaker.call, fn, *args)

    async def send(self, phone: str) -> str:
        phone = normalize_phone(phone, self.config.DEFAULT_COUNTRY_CODE)

        async def _send_with_retry() -> str:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=wait_exponential(multiplier=0.2, max=2),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    return await self._call(self._send_sync, phone)

        try:
            session_id = await asyncio.wait_for(
                _send_with_retry(), timeout=self.config.CODE_CHANNEL_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("Verification code send timed out")
            raise UpstreamTimeout("The SMS provider did not respond in time. Please retry", retry_after_seconds=5)
        except CircuitBreakerError:
            raise DeliveryFailed("SMS delivery is temporarily unavailable", retry_after_seconds=60)
        except TwilioRestException as e:
            logger.warning(f"Verification code send failed: {e.status} {e.code} {e.msg}")
            raise DeliveryFailed()
        except (ConnectionError, OSError) as e:
            logger.warning(f"Verification code send failed: {e}")
            raise DeliveryFailed()

        logger.info(f"Verification code sent to ***{phone[-4:]}")
        return session_id

    async def check(self, phone: str, code: str) -> bool:
        phone = normalize_phone(phone, self.config.DEFAULT_COUNTRY_CODE)
        try:
            return await asyncio.wait_for(
                self._call(self._check_sync, phone, code),
                timeout=self.config.CODE_CHANNEL_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error("Verification code check timed out")
            raise UpstreamTimeout("The SMS provider did not respond in time. Please retry", retry_after_seconds=5)
        except CircuitBreakerError:
            raise DeliveryFailed("Code verification is temporarily unavailable", retry_after_seconds=60)
        except TwilioRestException as e:
            logger.warning(f"Verification code check failed: {e.status} {e.code} {e.msg}")
            raise DeliveryFailed("Could not verify the code. Please retry")


_default_channel: Optional[CodeChannel] = None


def get_code_channel() -> CodeChannel:
    """FastAPI dependency: the process-wide code channel."""
    global _default_channel
    if _default_channel is None:
        _default_channel = TwilioVerifyChannel()
    return _default_channel
