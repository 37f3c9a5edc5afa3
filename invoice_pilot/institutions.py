"""Classify messages into canonical financial-institution labels."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from .models import LABEL_NONE


@dataclass(frozen=True)
class InstitutionPattern:
    pattern: str
    canonical_name: str
    generic: bool = False


def _entries(canonical: str, *patterns: str) -> list[InstitutionPattern]:
    return [InstitutionPattern(pattern, canonical) for pattern in (canonical.lower(), *patterns)]


DEFAULT_TABLE: tuple[InstitutionPattern, ...] = tuple(
    [
        # Digital banks and payment services
        *_entries("Wise", "transferwise", "wise.com"),
        *_entries("Revolut", "revolut.com"),
        *_entries("Nubank", "nubank.com.br"),
        *_entries("Bunq"),
        *_entries("Monzo"),
        *_entries("Starling"),
        *_entries("Chime"),
        *_entries("Venmo"),
        *_entries("PayPal"),
        *_entries("N26"),
        *_entries("Mollie"),
        *_entries("Adyen"),
        *_entries("Stripe"),
        *_entries("Moneco", "moneco bank"),
        # Traditional European banks
        *_entries("Santander", "banco santander", "santanderrio"),
        *_entries("BBVA"),
        *_entries("CaixaBank", "caixa bank", "la caixa"),
        *_entries("ING"),
        *_entries("Deutsche Bank"),
        *_entries("Commerzbank"),
        *_entries("HSBC"),
        *_entries("Barclays"),
        *_entries("Lloyds"),
        *_entries("NatWest", "rbs"),
        *_entries("Standard Chartered"),
        *_entries("BNP Paribas"),
        *_entries("Societe Generale"),
        *_entries("Credit Agricole"),
        *_entries("KBC"),
        *_entries("Rabobank"),
        *_entries("ABN AMRO"),
        *_entries("ASN Bank"),
        *_entries("Triodos", "triodos bank"),
        *_entries("Bankinter"),
        *_entries("Sabadell"),
        *_entries("Millennium BCP", "bcp", "bank millennium"),
        *_entries("BPI"),
        *_entries("Caixa Geral De Depositos", "caixa geral de depósitos"),
        *_entries("Intesa Sanpaolo"),
        *_entries("UniCredit", "hypovereinsbank", "bank austria"),
        *_entries("Mediolanum"),
        *_entries("LCL"),
        *_entries("Caisse D'epargne", "caisse d'epargne"),
        *_entries("Sparkasse"),
        *_entries("Volksbank"),
        *_entries("PKO BP", "pkobp"),
        *_entries("CSOB"),
        *_entries("Raiffeisen"),
        *_entries("Erste Bank"),
        *_entries("UBS"),
        *_entries("Credit Suisse"),
        *_entries("PostFinance"),
        *_entries("Nordea"),
        *_entries("DNB"),
        *_entries("Handelsbanken"),
        *_entries("SEB"),
        *_entries("Swedbank"),
        *_entries("Banco Do Brasil"),
        *_entries("Itau", "banco itaú", "itaú"),
        *_entries("Bradesco", "banco bradesco"),
        # Brokerages and exchanges
        *_entries("Interactive Brokers", "ibkr", "interactivebrokers.com"),
        *_entries("Charles Schwab", "schwab"),
        *_entries("E*Trade", "etrade"),
        *_entries("Fidelity"),
        *_entries("Robinhood"),
        *_entries("Webull"),
        *_entries("Coinbase"),
        *_entries("Binance"),
        *_entries("Kraken"),
        # Generic indicators, only used when nothing specific matched
        InstitutionPattern("bank", "Bank", generic=True),
        InstitutionPattern("banco", "Banco", generic=True),
        InstitutionPattern("financial", "Financial", generic=True),
        InstitutionPattern("fintech", "Fintech", generic=True),
        InstitutionPattern("fiscal", "Fiscal", generic=True),
        InstitutionPattern("tributary", "Tributary", generic=True),
    ]
)


def title_case(name: str) -> str:
    """Capitalise the first letter of every word and lowercase the rest."""
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split())


class InstitutionDetector:
    """Match message text against a pattern table, most specific first."""

    def __init__(self, table: Iterable[InstitutionPattern] = DEFAULT_TABLE) -> None:
        entries = list(table)
        specific = [entry for entry in entries if not entry.generic]
        generic = [entry for entry in entries if entry.generic]
        # Stable sort keeps table order between patterns of equal length.
        ordered = sorted(specific, key=lambda e: len(e.pattern), reverse=True) + sorted(
            generic, key=lambda e: len(e.pattern), reverse=True
        )
        self._compiled = [
            (self._compile(entry.pattern), title_case(entry.canonical_name)) for entry in ordered
        ]

    @staticmethod
    def _compile(pattern: str) -> re.Pattern[str]:
        return re.compile(
            rf"(?<![0-9a-z]){re.escape(pattern.lower())}(?![0-9a-z])", re.IGNORECASE
        )

    def classify(
        self,
        sender_address: str,
        sender_display_name: str,
        subject: str = "",
        body_snippet: str = "",
    ) -> str:
        text = " ".join(
            part for part in (sender_address, sender_display_name, subject, body_snippet) if part
        ).lower()
        for regex, canonical in self._compiled:
            if regex.search(text):
                return canonical
        return LABEL_NONE


_default_detector = InstitutionDetector()


def classify(
    sender_address: str,
    sender_display_name: str,
    subject: str = "",
    body_snippet: str = "",
) -> str:
    """Classify with the built-in table."""
    return _default_detector.classify(sender_address, sender_display_name, subject, body_snippet)
