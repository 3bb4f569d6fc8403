"""Customer matching for imported rows.

Two tools live here:

* ``customer_key`` / ``group_rows_by_customer``: the exact, deterministic
  (name | street | zip) identity the bulk importer relies on.
* ``find_matches``: a scored fuzzy matcher (Dice coefficient over
  character bigrams) used for merge suggestions. The bulk import path
  does not use it.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from agencycrm.schemas.csv_import import ImportRecord, RowResult

STRONG = "strong"
POSSIBLE = "possible"

MAX_MATCHES = 3

_ADDRESS_ABBREVIATIONS = {
    "st": "street",
    "rd": "road",
    "ave": "avenue",
    "ln": "lane",
    "dr": "drive",
    "blvd": "boulevard",
    "ct": "court",
    "pl": "place",
    "pkwy": "parkway",
    "apt": "apartment",
    "ste": "suite",
}
# Unit markers carry no identity on their own
_ADDRESS_DROPPED = {"unit"}


def normalize_for_matching(value) -> str:
    if not value or not isinstance(value, str):
        return ""
    s = re.sub(r"[^\w\s]", " ", value.lower().strip())
    return re.sub(r"\s+", " ", s).strip()


def normalize_address(value) -> str:
    """normalize_for_matching plus street-suffix/unit abbreviation expansion."""
    s = normalize_for_matching(value)
    if not s:
        return ""
    words = []
    for i, word in enumerate(s.split(" ")):
        # Leading token is the house number / first word; never expand it
        if i > 0 and word in _ADDRESS_DROPPED:
            continue
        words.append(_ADDRESS_ABBREVIATIONS.get(word, word) if i > 0 else word)
    return " ".join(words)


def _bigrams(s: str) -> set:
    return {s[i:i + 2] for i in range(len(s) - 1)}


def string_similarity(a: str, b: str) -> float:
    """Dice coefficient over character bigrams, 0.0 .. 1.0.

    Two empty strings compare as 1.0 (a vacuous match). Callers that match
    customers check for empty input first so this never produces a match.
    """
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    bigrams_a = _bigrams(a)
    bigrams_b = _bigrams(b)
    if not bigrams_a and not bigrams_b:
        return 1.0
    if not bigrams_a or not bigrams_b:
        return 0.0
    return 2 * len(bigrams_a & bigrams_b) / (len(bigrams_a) + len(bigrams_b))


def name_similarity(a, b) -> float:
    na, nb = normalize_for_matching(a), normalize_for_matching(b)
    if not na or not nb:
        return 0.0
    return string_similarity(na, nb)


def address_similarity(a, b) -> float:
    na, nb = normalize_address(a), normalize_address(b)
    if not na or not nb:
        return 0.0
    return string_similarity(na, nb)


@dataclass
class MatchCandidate:
    """Comparable view of an existing customer (store document or record)."""
    name: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    source: Any = None

    @classmethod
    def from_customer(cls, customer) -> "MatchCandidate":
        if isinstance(customer, dict):
            address = customer.get("address") or {}
            if isinstance(address, str):
                address = {"street": address}
            return cls(
                name=customer.get("fullName") or customer.get("insuredName") or "",
                street=address.get("street") or customer.get("street") or "",
                city=address.get("city") or customer.get("city") or "",
                state=address.get("state") or customer.get("state") or "",
                zip=address.get("zip") or customer.get("zip") or "",
                source=customer,
            )
        # Customer record
        return cls(
            name=customer.full_name or "",
            street=customer.address.street or "",
            city=customer.address.city or "",
            state=customer.address.state or "",
            zip=customer.address.zip or "",
            source=customer,
        )


@dataclass
class Match:
    customer: Any
    match_strength: str
    score: float
    name_score: float
    addr_score: float
    zip_match: bool
    city_match: bool
    state_match: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_strength": self.match_strength,
            "score": round(self.score, 4),
            "name_score": round(self.name_score, 4),
            "addr_score": round(self.addr_score, 4),
            "zip_match": self.zip_match,
            "city_match": self.city_match,
            "state_match": self.state_match,
        }


def _classify(name_score, addr_score, zip_match, city_match, state_match):
    if zip_match and addr_score >= 0.85:
        return STRONG, 0.9 + 0.1 * name_score
    if name_score >= 0.92 and (city_match or state_match or zip_match):
        return STRONG, 0.85 + 0.15 * addr_score
    if name_score >= 0.85:
        return POSSIBLE, 0.6 * name_score + 0.4 * addr_score
    if zip_match and addr_score >= 0.75:
        return POSSIBLE, 0.7 * addr_score + 0.3 * name_score
    return None, 0.0


def find_matches(imported: ImportRecord, existing_customers: Iterable[Any]) -> List[Match]:
    """Score existing customers against an imported row; best three strong/possible matches."""
    name = normalize_for_matching(imported.insured_name)
    street = normalize_address(imported.address)
    zip_code = (imported.zip or "").strip()
    city = normalize_for_matching(imported.city)
    state = (imported.state or "").strip().upper()

    matches = []
    for customer in existing_customers:
        candidate = MatchCandidate.from_customer(customer)
        other_zip = candidate.zip.strip()
        other_city = normalize_for_matching(candidate.city)
        other_state = candidate.state.strip().upper()

        name_score = name_similarity(name, candidate.name)
        addr_score = address_similarity(street, candidate.street)
        # Blank fields on either side never count as agreeing
        zip_match = bool(zip_code) and zip_code == other_zip
        city_match = bool(city) and city == other_city
        state_match = bool(state) and state == other_state

        strength, score = _classify(name_score, addr_score, zip_match, city_match, state_match)
        if strength is None:
            continue
        matches.append(Match(
            customer=candidate.source,
            match_strength=strength,
            score=score,
            name_score=name_score,
            addr_score=addr_score,
            zip_match=zip_match,
            city_match=city_match,
            state_match=state_match,
        ))

    matches.sort(key=lambda m: m.score, reverse=True)
    return matches[:MAX_MATCHES]


# ── exact identity ───────────────────────────────────────────────────

def customer_key(name: str, street: str, zip_code: str) -> str:
    """Exact identity used by the bulk importer: normalized name|street|zip."""
    return "|".join((
        normalize_for_matching(name),
        normalize_address(street),
        (zip_code or "").strip().lower(),
    ))


@dataclass
class CustomerGroup:
    insured_name: str
    address: str
    city: str
    state: str
    zip: str
    policies: List[Dict[str, Any]] = field(default_factory=list)


def group_rows_by_customer(rows: Iterable[RowResult]) -> List[CustomerGroup]:
    """Group valid rows that belong to the same customer, in first-seen order."""
    groups: Dict[str, CustomerGroup] = {}
    for row in rows:
        if not row.valid or row.data is None:
            continue
        data = row.data
        key = customer_key(data.insured_name, data.address, data.zip)
        group = groups.get(key)
        if group is None:
            group = groups[key] = CustomerGroup(
                insured_name=data.insured_name,
                address=data.address,
                city=data.city,
                state=data.state,
                zip=data.zip,
            )
        group.policies.append({
            "policy_type_normalized": data.policy_type_normalized,
            "raw_policy_type": data.raw_policy_type,
            "effective_date": data.effective_date,
            "expiration_date": data.expiration_date,
            "insurance_company": data.insurance_company,
            "premium": data.premium,
            "row_index": row.row_index,
        })
    return list(groups.values())
