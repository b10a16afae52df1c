"""Email address validation: syntax plus DNS deliverability records."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import dns.asyncresolver
import dns.exception

logger = logging.getLogger("leadsite.validation")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

INVALID_FORMAT = "Invalid email format"
NO_DOMAIN = "Could not extract domain from email"
NO_RECORDS = "Domain does not have valid MX or A records"


@dataclass
class ValidationResult:
    is_valid: bool
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"isValid": self.is_valid, "details": dict(self.details)}
        if self.error is not None:
            payload["error"] = self.error
        return payload


class EmailValidator:
    """Check that an address is well formed and its domain can receive mail.

    A domain counts as deliverable when it publishes MX records, or failing
    that an A or AAAA record (the implicit MX rule). Lookup errors for one
    record type fall through to the next type.
    """

    def __init__(self, resolver: Optional[Any] = None, *, lifetime: float = 5.0) -> None:
        if resolver is None:
            resolver = dns.asyncresolver.Resolver()
            resolver.lifetime = lifetime
        self._resolver = resolver

    @staticmethod
    def validate_format(email: str) -> bool:
        return bool(EMAIL_PATTERN.match(email))

    @staticmethod
    def extract_domain(email: str) -> str:
        parts = email.split("@")
        return parts[1].lower() if len(parts) == 2 else ""

    async def _lookup(self, domain: str, record_type: str) -> List[Any]:
        try:
            answer = await self._resolver.resolve(domain, record_type)
        except dns.exception.DNSException as exc:
            logger.debug("No %s records for %s: %s", record_type, domain, exc)
            return []
        return list(answer)

    async def resolve_mx(self, domain: str) -> List[str]:
        records = await self._lookup(domain, "MX")
        ordered = sorted(records, key=lambda record: record.preference)
        return [record.exchange.to_text(omit_final_dot=True) for record in ordered]

    async def validate_domain_records(self, domain: str) -> ValidationResult:
        logger.info("Validating domain %s", domain)

        mx_records = await self.resolve_mx(domain)
        if mx_records:
            logger.info("MX records found for %s: %s", domain, mx_records)
            return ValidationResult(
                is_valid=True,
                details={"domain": domain, "mxRecords": mx_records, "hasRecords": True},
            )

        for record_type in ("A", "AAAA"):
            addresses = await self._lookup(domain, record_type)
            if addresses:
                logger.info("%s records found for %s", record_type, domain)
                return ValidationResult(
                    is_valid=True,
                    details={"domain": domain, "mxRecords": [], "hasRecords": True},
                )

        logger.warning("Domain %s has no MX, A or AAAA records", domain)
        return ValidationResult(
            is_valid=False,
            error=NO_RECORDS,
            details={"domain": domain, "hasRecords": False},
        )

    async def validate(self, email: str) -> ValidationResult:
        if not self.validate_format(email):
            return ValidationResult(is_valid=False, error=INVALID_FORMAT)

        domain = self.extract_domain(email)
        if not domain:
            return ValidationResult(is_valid=False, error=NO_DOMAIN)

        return await self.validate_domain_records(domain)


__all__ = ["EmailValidator", "ValidationResult"]
