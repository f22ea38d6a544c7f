"""Card validation and short-lived encrypted card storage."""

from __future__ import annotations

import base64
import calendar
import hashlib
import json
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.utils import timezone

from apps.billing import models
from apps.billing.services import jobs
from apps.billing.services.errors import ValidationError

logger = logging.getLogger(__name__)

_EXPIRY_PATTERN = re.compile(r"^(0[1-9]|1[0-2])/(\d{2})$")
_DIGITS = re.compile(r"^\d+$")

INVALID_CARD_MESSAGE = (
    "Invalid card data: check the card number, expiration date and security code"
)


@dataclass(frozen=True)
class CardData:
    number: str
    expiry: str
    cvv: str
    name: str

    @property
    def last_four(self) -> str:
        return self.number[-4:]

    @property
    def gateway_expiry(self) -> str:
        """Expiry in the gateway's ``YYYY-MM`` form."""

        month, year = self.expiry.split("/")
        return f"20{year}-{month}"

    def __repr__(self) -> str:  # keep PANs out of logs and tracebacks
        return f"CardData(last_four={self.last_four!r}, expiry={self.expiry!r})"


def normalize_card(*, number: str, expiry: str, cvv: str, name: str) -> CardData:
    return CardData(
        number=re.sub(r"[\s-]", "", number or ""),
        expiry=(expiry or "").strip(),
        cvv=(cvv or "").strip(),
        name=" ".join((name or "").split()),
    )


def luhn_valid(number: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def card_problems(card: CardData, *, now: Optional[datetime] = None) -> list[str]:
    """Return a list of problems with ``card``; empty means valid."""

    problems: list[str] = []

    if not _DIGITS.match(card.number) or not 13 <= len(card.number) <= 19:
        problems.append("card number must be 13-19 digits")
    elif not luhn_valid(card.number):
        problems.append("card number failed checksum")

    if not _DIGITS.match(card.cvv) or not 3 <= len(card.cvv) <= 4:
        problems.append("security code must be 3 or 4 digits")

    match = _EXPIRY_PATTERN.match(card.expiry)
    if match is None:
        problems.append("expiration must be MM/YY")
    else:
        month, year = int(match.group(1)), 2000 + int(match.group(2))
        now = now or timezone.now()
        last_day = calendar.monthrange(year, month)[1]
        if (year, month, last_day) < (now.year, now.month, now.day):
            problems.append("card is expired")

    if len(card.name) < 3:
        problems.append("cardholder name is too short")

    return problems


def validate_card(card: CardData, *, now: Optional[datetime] = None) -> CardData:
    problems = card_problems(card, now=now)
    if problems:
        logger.info("Rejected card ending %s: %s", card.last_four, ", ".join(problems))
        raise ValidationError(INVALID_CARD_MESSAGE)
    return card


def _fernet() -> Fernet:
    key = getattr(settings, "BILLING_CARD_ENCRYPTION_KEY", None)
    if key:
        return Fernet(key.encode("utf-8") if isinstance(key, str) else key)
    digest = hashlib.sha256(f"card-data:{settings.SECRET_KEY}".encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def seal_card(card: CardData) -> str:
    return _fernet().encrypt(json.dumps(asdict(card)).encode("utf-8")).decode("ascii")


def open_card(token: str) -> CardData:
    payload = json.loads(_fernet().decrypt(token.encode("ascii")))
    return CardData(**payload)


def card_data_ttl() -> timedelta:
    """How long sealed card data stays readable after it is stored.

    The window spans the deferred setup delay and every retry of the setup
    job, followed by ``BILLING_CARD_DATA_TTL_SECONDS`` of grace.
    """

    delay = int(getattr(settings, "BILLING_DEFERRED_DELAY_SECONDS", 3600))
    grace = int(getattr(settings, "BILLING_CARD_DATA_TTL_SECONDS", 3600))
    return timedelta(seconds=delay + jobs.retry_window_seconds() + grace)


def store_temporary_card(checkout_id: str, card: CardData) -> models.TemporaryCardData:
    record, _ = models.TemporaryCardData.objects.update_or_create(
        checkout_id=checkout_id,
        defaults={"sealed_payload": seal_card(card), "created_at": timezone.now()},
    )
    return record


def load_temporary_card(checkout_id: str) -> Optional[CardData]:
    """Return stored card data if present and younger than the retention window."""

    record = models.TemporaryCardData.objects.filter(checkout_id=checkout_id).first()
    if record is None:
        return None
    if record.is_expired(card_data_ttl()):
        logger.info("Temporary card data for %s has expired", checkout_id)
        return None
    try:
        return open_card(record.sealed_payload)
    except InvalidToken:
        logger.error("Temporary card data for %s could not be decrypted", checkout_id)
        return None


def discard_temporary_card(checkout_id: str) -> None:
    models.TemporaryCardData.objects.filter(checkout_id=checkout_id).delete()


def purge_expired_card_data() -> int:
    cutoff = timezone.now() - card_data_ttl()
    deleted, _ = models.TemporaryCardData.objects.filter(created_at__lt=cutoff).delete()
    if deleted:
        logger.info("Purged %s expired temporary card records", deleted)
    return deleted


__all__ = [
    "CardData",
    "INVALID_CARD_MESSAGE",
    "card_problems",
    "card_data_ttl",
    "discard_temporary_card",
    "load_temporary_card",
    "luhn_valid",
    "normalize_card",
    "open_card",
    "purge_expired_card_data",
    "seal_card",
    "store_temporary_card",
    "validate_card",
]
