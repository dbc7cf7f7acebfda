"""
Account Resolver.

Maps free-text account references from extracted transactions
("XXXX-1802", "MAS Irrevocable Trust", "E*TRADE") to durable account ids,
creating accounts on first sight.

SSOT: This module is the single source of truth for account matching.

The resolver is built from a fresh read of the accounts table at the start
of each batch commit. Within that commit, lookups are cached and newly
created accounts are visible to later lookups immediately; nothing is
shared across commits or runs.
"""

import logging
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from ..state_store import AccountRecord, AccountUpdate, CorpusSuggestion, NewAccount

logger = logging.getLogger(__name__)

MASK_CHARS = ("X", "*")
UNKNOWN_ACCOUNT = "Unknown Account"

_LAST4_RE = re.compile(r"(\d{4})$")
_TOKEN_SPLIT_RE = re.compile(r"[\s\-]+")
_FILLER_WORDS = frozenset({"account", "the", "and", "for", "inc", "llc", "ltd"})

SAME_INSTITUTION_CONFIDENCE = 0.3
MIN_SUGGESTION_CONFIDENCE = 0.2


def normalize_account_number(number: str) -> str:
    """Strip spaces and dashes, upper-case."""
    return re.sub(r"[\s\-]", "", number).upper()


def is_masked(number: str) -> bool:
    """True if the number hides digits behind a masking character."""
    normalized = normalize_account_number(number)
    return any(ch in normalized for ch in MASK_CHARS)


def _last4(normalized: str) -> str | None:
    match = _LAST4_RE.search(normalized)
    return match.group(1) if match else None


def account_numbers_match(a: str | None, b: str | None) -> bool:
    """
    Compare two account numbers, allowing masked forms.

    Exact match after normalization, or same last four digits when at
    least one side is masked. Two different full numbers never match.

    >>> account_numbers_match("XXXX-1802", "987654321802")
    True
    >>> account_numbers_match("XXXX-1802", "XXXX-1234")
    False
    """
    if not a or not b:
        return False

    norm_a = normalize_account_number(a)
    norm_b = normalize_account_number(b)
    if norm_a == norm_b:
        return True

    if not (is_masked(norm_a) or is_masked(norm_b)):
        return False

    last4_a = _last4(norm_a)
    return last4_a is not None and last4_a == _last4(norm_b)


def names_match(a: str | None, b: str | None) -> bool:
    """Case-insensitive equality or containment in either direction."""
    if not a or not b:
        return False
    a_l = a.strip().lower()
    b_l = b.strip().lower()
    if not a_l or not b_l:
        return False
    return a_l == b_l or a_l in b_l or b_l in a_l


def meaningful_tokens(name: str | None) -> set[str]:
    """Name tokens that carry identity (no masks, numbers or filler)."""
    if not name:
        return set()
    tokens = set()
    for token in _TOKEN_SPLIT_RE.split(name.lower()):
        if len(token) < 3 or token.isdigit() or token in _FILLER_WORDS:
            continue
        if set(token) == {"x"} or "xx" in token:
            continue
        tokens.add(token)
    return tokens


@dataclass
class _KnownAccount:
    """Resolver-local view of an account, updated as the batch improves it."""

    id: str
    display_name: str
    institution: str | None
    account_number: str | None
    masked_number: str | None

    @property
    def numbers(self) -> list[str]:
        return [n for n in (self.account_number, self.masked_number) if n]


class AccountResolver:
    """
    Resolves account references against a snapshot of the registry.

    Collects the rows a batch commit needs to write: ``new_accounts`` for
    first sightings and ``account_updates`` for non-destructive improvements
    to accounts that existed before the batch.
    """

    def __init__(self, accounts: Iterable[AccountRecord]):
        self._accounts: list[_KnownAccount] = [
            _KnownAccount(
                id=a.id,
                display_name=a.display_name,
                institution=a.institution,
                account_number=a.account_number,
                masked_number=a.masked_number,
            )
            for a in accounts
        ]
        self._cache: dict[str, str] = {}
        self.new_accounts: dict[str, NewAccount] = {}
        self.account_updates: dict[str, AccountUpdate] = {}

    def resolve(
        self,
        number: str | None,
        name: str | None,
        institution: str | None,
        is_external: bool = False,
        account_type: str | None = None,
    ) -> str | None:
        """
        Return the account id for a reference, creating the account if unseen.

        Returns None only when neither a number nor a name is given.
        """
        number = (number or "").strip() or None
        name = (name or "").strip() or None
        institution = (institution or "").strip() or None
        if not number and not name:
            return None

        cache_key = f"{number or ''}_{name or ''}_{institution or ''}"
        if cache_key in self._cache:
            return self._cache[cache_key]

        existing = self._find(number, name)
        if existing is not None:
            self._improve(existing, number, name, institution)
            account_id = existing.id
        else:
            account_id = self._create(number, name, institution, is_external, account_type)

        self._cache[cache_key] = account_id
        return account_id

    def _find(self, number: str | None, name: str | None) -> _KnownAccount | None:
        if number:
            for account in self._accounts:
                if any(account_numbers_match(number, n) for n in account.numbers):
                    return account

        if name:
            for account in self._accounts:
                if not names_match(name, account.display_name):
                    continue
                if number and account.numbers:
                    candidate_last4 = _last4(normalize_account_number(number))
                    account_last4 = {_last4(normalize_account_number(n)) for n in account.numbers}
                    if candidate_last4 is None or candidate_last4 not in account_last4:
                        continue
                return account

        return None

    def _improve(
        self,
        account: _KnownAccount,
        number: str | None,
        name: str | None,
        institution: str | None,
    ) -> None:
        """Fill gaps on a matched account; never overwrites good data."""
        new_number = None
        new_display = None
        new_institution = None

        if number and not is_masked(number):
            if not account.account_number or is_masked(account.account_number):
                new_number = number
        if name and account.display_name in (account.masked_number, UNKNOWN_ACCOUNT):
            if name != account.display_name:
                new_display = name
        if institution and not account.institution:
            new_institution = institution

        if not (new_number or new_display or new_institution):
            return

        if new_number:
            account.account_number = new_number
        if new_display:
            account.display_name = new_display
        if new_institution:
            account.institution = new_institution

        pending = self.new_accounts.get(account.id)
        if pending is not None:
            pending.account_number = account.account_number
            pending.display_name = account.display_name
            pending.institution = account.institution
            return

        update = self.account_updates.setdefault(account.id, AccountUpdate(account_id=account.id))
        update.account_number = new_number or update.account_number
        update.display_name = new_display or update.display_name
        update.institution = new_institution or update.institution
        logger.debug(f"Improving account {account.id}")

    def _create(
        self,
        number: str | None,
        name: str | None,
        institution: str | None,
        is_external: bool,
        account_type: str | None,
    ) -> str:
        masked = bool(number) and is_masked(number)
        account = NewAccount(
            id=str(uuid.uuid4()),
            display_name=name or number or UNKNOWN_ACCOUNT,
            institution=institution,
            account_number=None if masked else number,
            masked_number=number if masked else None,
            account_type=account_type,
            is_external=is_external,
        )
        self.new_accounts[account.id] = account
        self._accounts.append(
            _KnownAccount(
                id=account.id,
                display_name=account.display_name,
                institution=account.institution,
                account_number=account.account_number,
                masked_number=account.masked_number,
            )
        )
        logger.info(f"New account: {account.display_name} ({institution or 'no institution'})")
        return account.id

    def corpus_suggestions(self) -> list[CorpusSuggestion]:
        """Weak-similarity suggestions linking each new account to the others."""
        suggestions = []
        for account_id in self.new_accounts:
            new = next(a for a in self._accounts if a.id == account_id)
            for other in self._accounts:
                if other.id == new.id:
                    continue
                suggestion = suggest_corpus_link(new, other)
                if suggestion is not None:
                    suggestions.append(suggestion)
        return suggestions


def suggest_corpus_link(new: _KnownAccount, other: _KnownAccount) -> CorpusSuggestion | None:
    """
    Propose grouping two accounts when they look related.

    Same institution scores 0.3; shared meaningful name tokens score
    0.5 + 0.1 per token, capped at 0.8. Weak signals are dropped.
    """
    confidence = 0.0
    reason = ""

    if (
        new.institution
        and other.institution
        and new.institution.strip().lower() == other.institution.strip().lower()
    ):
        confidence = SAME_INSTITUTION_CONFIDENCE
        reason = f"Same institution: {new.institution}"

    shared = meaningful_tokens(new.display_name) & meaningful_tokens(other.display_name)
    if shared:
        token_confidence = min(0.5 + 0.1 * len(shared), 0.8)
        if token_confidence > confidence:
            confidence = token_confidence
            reason = f"Similar names: {', '.join(sorted(shared))}"

    if confidence <= MIN_SUGGESTION_CONFIDENCE:
        return None

    return CorpusSuggestion(
        account_id1=new.id,
        account_id2=other.id,
        reason=reason,
        confidence=round(confidence, 2),
    )
