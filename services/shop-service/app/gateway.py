import logging
import os
import random
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from .schemas import CardPaymentIn

logger = logging.getLogger(__name__)

# When set, card authorization is delegated to this endpoint instead of simulated
CARD_AUTH_URL = os.getenv("CARD_AUTH_URL", "").rstrip("/")
CARD_AUTH_TIMEOUT = float(os.getenv("CARD_AUTH_TIMEOUT", "5.0"))

# Reuse client across invocations
_http_client: httpx.Client | None = None


@dataclass(frozen=True)
class Authorization:
    approved: bool
    transaction_id: str | None = None
    message: str = ""


class CardAuthorizer(Protocol):
    def authorize(self, card: CardPaymentIn, amount: Decimal) -> Authorization:
        ...


def _transaction_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 9999)}"


class SimulatedCardAuthorizer:
    """Approves everything except the well-known test decline numbers."""

    DECLINED = frozenset({"4000000000000002", "4000000000009995", "4000000000000069"})

    def authorize(self, card: CardPaymentIn, amount: Decimal) -> Authorization:
        if card.number in self.DECLINED:
            return Authorization(approved=False, message="Card declined")
        return Authorization(approved=True, transaction_id=_transaction_id("CARD"), message="Payment approved")


class HttpCardAuthorizer:
    def __init__(self, url: str, client: httpx.Client | None = None):
        self.url = url
        self.client = client

    def authorize(self, card: CardPaymentIn, amount: Decimal) -> Authorization:
        client = self.client or get_http_client()
        try:
            r = client.post(
                f"{self.url}/authorizations",
                json={
                    "amount": str(amount),
                    "number": card.number,
                    "name": card.name,
                    "expiry": card.expiry,
                    "cvv": card.cvv,
                },
            )
        except httpx.TimeoutException:
            logger.warning("card authorization timed out")
            return Authorization(approved=False, message="Card authorization timeout")
        except httpx.RequestError:
            logger.warning("card authorization service unavailable")
            return Authorization(approved=False, message="Card authorization unavailable")

        if r.status_code != 200:
            return Authorization(approved=False, message=f"Card authorization rejected ({r.status_code})")

        try:
            data = r.json()
        except ValueError:
            return Authorization(approved=False, message="Bad response from card authorization")

        return Authorization(
            approved=bool(data.get("approved")),
            transaction_id=data.get("transaction_id"),
            message=data.get("message") or ("Payment approved" if data.get("approved") else "Card declined"),
        )


def get_http_client() -> httpx.Client:
    global _http_client
    if _http_client is None:
        # fallback in case lifespan didn't run (tests)
        _http_client = httpx.Client(timeout=CARD_AUTH_TIMEOUT)
    return _http_client


def open_http_client() -> None:
    global _http_client
    _http_client = httpx.Client(timeout=CARD_AUTH_TIMEOUT)


def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        _http_client.close()
        _http_client = None


def get_card_authorizer() -> CardAuthorizer:
    if CARD_AUTH_URL:
        return HttpCardAuthorizer(CARD_AUTH_URL)
    return SimulatedCardAuthorizer()


def deferred_transaction_id() -> str:
    return _transaction_id("TXN")
