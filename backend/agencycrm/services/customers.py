"""Customer and policy operations for one agency.

Every customer write that touches ``phoneE164`` queues the phone-index
write in the same batch, so the index never disagrees with a committed
customer. Metrics follow each change as a best-effort side effect.
"""
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional

from agencycrm.core.config import settings
from agencycrm.core.tenant import TenantContext
from agencycrm.schemas.customer import Address, Customer, CustomerStatus
from agencycrm.schemas.policy import Policy, PolicyIn
from agencycrm.services.document_store import (
    PREFIX_END,
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    new_doc_id,
)
from agencycrm.services.matching import customer_key, normalize_for_matching
from agencycrm.services.metrics import MetricsService
from agencycrm.services.normalizers import (
    POLICY_TYPES,
    normalize_phone,
    normalize_policy_type,
    parse_date,
)

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PREMIUM_TOLERANCE = 0.01


class CustomerValidationError(ValueError):
    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(", ".join(errors))


class CustomerNotFound(LookupError):
    pass


# ── documents ────────────────────────────────────────────────────────

def validate_customer(data: Dict[str, Any]) -> List[str]:
    errors = []
    if not (data.get("first_name") or data.get("full_name")):
        errors.append("First name or full name is required")
    if data.get("phone_raw") and not normalize_phone(data["phone_raw"]):
        errors.append("Invalid phone number format")
    if data.get("email") and not EMAIL_RE.match(data["email"]):
        errors.append("Invalid email format")
    return errors


def _split_tags(tags) -> List[str]:
    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [t.strip() for t in tags if t and t.strip()]


def build_customer(form: Dict[str, Any]) -> Customer:
    """Customer record from form input, with the agency's defaults filled in."""
    full_name = (
        form.get("full_name")
        or f"{form.get('first_name') or ''} {form.get('last_name') or ''}".strip()
        or "Unknown"
    )
    return Customer(
        full_name=full_name,
        first_name=form.get("first_name") or None,
        last_name=form.get("last_name") or None,
        phone_e164=normalize_phone(form.get("phone_raw")),
        phone_raw=form.get("phone_raw") or None,
        email=form.get("email") or None,
        address=Address(
            street=form.get("street") or None,
            city=form.get("city") or None,
            state=form.get("state") or None,
            zip=form.get("zip") or None,
        ),
        preferred_language=form.get("preferred_language") or "en",
        tags=_split_tags(form.get("tags")),
        status=form.get("status") or CustomerStatus.LEAD,
        source=form.get("source") or None,
        assigned_to_uid=form.get("assigned_to_uid") or None,
    )


def customer_document(customer: Customer) -> Dict[str, Any]:
    """Store body for a new customer, server timestamps and name search key included."""
    doc = customer.to_document()
    doc["nameKey"] = normalize_for_matching(customer.full_name)
    doc["createdAt"] = SERVER_TIMESTAMP
    doc["updatedAt"] = SERVER_TIMESTAMP
    return doc


def is_duplicate_policy(
    existing: Dict[str, Any],
    policy_type_normalized: str,
    effective_date: date,
    insurance_company: Optional[str],
    premium: Optional[float],
) -> bool:
    """Same type, same effective day, same carrier (case/space-insensitive), premium within a cent."""
    if existing.get("policyTypeNormalized") != policy_type_normalized:
        return False
    if parse_date(existing.get("effectiveDate")) != effective_date:
        return False
    carrier_a = (existing.get("insuranceCompany") or "").strip().lower()
    carrier_b = (insurance_company or "").strip().lower()
    if carrier_a != carrier_b:
        return False
    return abs((existing.get("premium") or 0) - (premium or 0)) <= PREMIUM_TOLERANCE


class CustomerService:
    def __init__(self, store: DocumentStore, tenant: TenantContext):
        self.store = store
        self.tenant = tenant
        self.metrics = MetricsService(store)

    # ── paths ────────────────────────────────────────────────────────

    @property
    def customers_path(self) -> str:
        return self.tenant.path("customers")

    def customer_path(self, customer_id: str) -> str:
        return self.tenant.path("customers", customer_id)

    def policies_path(self, customer_id: str) -> str:
        return self.tenant.path("customers", customer_id, "policies")

    def policy_path(self, customer_id: str, policy_id: str) -> str:
        return self.tenant.path("customers", customer_id, "policies", policy_id)

    def phone_index_path(self, phone_e164: str) -> str:
        return self.tenant.path("phoneIndex", phone_e164)

    def new_customer_id(self) -> str:
        return new_doc_id()

    # ── customers ────────────────────────────────────────────────────

    def create_customer(self, form: Dict[str, Any]) -> str:
        errors = validate_customer(form)
        if errors:
            raise CustomerValidationError(errors)

        customer = build_customer(form)
        if customer.phone_e164 and self.store.get(self.phone_index_path(customer.phone_e164)):
            raise CustomerValidationError(["Phone number already belongs to another customer"])

        customer_id = self.new_customer_id()
        batch = self.store.batch()
        batch.set(self.customer_path(customer_id), customer_document(customer))
        if customer.phone_e164:
            batch.set(self.phone_index_path(customer.phone_e164), {
                "customerId": customer_id,
                "updatedAt": SERVER_TIMESTAMP,
            })
        batch.commit()

        self.metrics.increment_customer_count(self.tenant, 1)
        logger.info(f"[customers] {self.tenant.tenant_id}: created customer {customer_id}")
        return customer_id

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        snap = self.store.get(self.customer_path(customer_id))
        return Customer.from_document(snap) if snap else None

    def _require_customer(self, customer_id: str) -> DocumentSnapshot:
        snap = self.store.get(self.customer_path(customer_id))
        if snap is None:
            raise CustomerNotFound(f"Customer not found: {customer_id}")
        return snap

    def get_customer_by_phone(self, phone_raw: str) -> Optional[Customer]:
        phone = normalize_phone(phone_raw)
        if not phone:
            return None
        entry = self.store.get(self.phone_index_path(phone))
        if entry is None:
            return None
        customer_id = entry.data.get("customerId")
        return self.get_customer(customer_id) if customer_id else None

    def list_customers(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
    ) -> List[Customer]:
        filters = [("status", "==", status)] if status else []
        docs = self.store.query(self.customers_path, filters=filters, order_by="-createdAt")
        customers = [Customer.from_document(d) for d in docs]
        if search and search.strip():
            needle = search.strip().lower()
            digits = re.sub(r"\D", "", needle)
            customers = [
                c for c in customers
                if needle in (c.full_name or "").lower()
                or needle in (c.email or "").lower()
                or (digits and digits in (c.phone_e164 or ""))
            ]
        return customers[:limit]

    def update_customer(self, customer_id: str, updates: Dict[str, Any]) -> None:
        snap = self._require_customer(customer_id)
        old = snap.data
        updates = {k: v for k, v in updates.items() if v is not None}

        merged = {
            "full_name": old.get("fullName"),
            "first_name": old.get("firstName"),
            **updates,
        }
        errors = validate_customer(merged)
        if errors:
            raise CustomerValidationError(errors)

        fields: Dict[str, Any] = {}
        simple = {
            "full_name": "fullName",
            "first_name": "firstName",
            "last_name": "lastName",
            "email": "email",
            "preferred_language": "preferredLanguage",
            "status": "status",
            "assigned_to_uid": "assignedToUid",
        }
        for key, doc_field in simple.items():
            if key in updates:
                value = updates[key]
                fields[doc_field] = value.value if isinstance(value, CustomerStatus) else value
        if "full_name" in updates:
            fields["nameKey"] = normalize_for_matching(updates["full_name"])
        if "tags" in updates:
            fields["tags"] = _split_tags(updates["tags"])
        for key in ("street", "city", "state", "zip"):
            if key in updates:
                fields[f"address.{key}"] = updates[key]

        batch = self.store.batch()
        old_phone = old.get("phoneE164")
        if "phone_raw" in updates:
            new_phone = normalize_phone(updates["phone_raw"])
            fields["phoneRaw"] = updates["phone_raw"]
            if new_phone != old_phone:
                if new_phone:
                    owner = self.store.get(self.phone_index_path(new_phone))
                    if owner and owner.data.get("customerId") != customer_id:
                        raise CustomerValidationError(["Phone number already belongs to another customer"])
                    batch.set(self.phone_index_path(new_phone), {
                        "customerId": customer_id,
                        "updatedAt": SERVER_TIMESTAMP,
                    })
                if old_phone:
                    batch.delete(self.phone_index_path(old_phone))
                fields["phoneE164"] = new_phone

        fields["updatedAt"] = SERVER_TIMESTAMP
        batch.update(self.customer_path(customer_id), fields)
        batch.commit()

    def update_last_contact(self, customer_id: str, message_snippet: Optional[str] = None) -> None:
        self.store.update(self.customer_path(customer_id), {
            "lastContactAt": SERVER_TIMESTAMP,
            "lastMessageSnippet": message_snippet or None,
            "updatedAt": SERVER_TIMESTAMP,
        })

    def delete_customer(self, customer_id: str) -> Dict[str, Any]:
        """Delete a customer with its policies, notes and phone-index entry."""
        snap = self._require_customer(customer_id)
        policies = self.store.query(self.policies_path(customer_id))
        notes = self.store.query(self.tenant.path("customers", customer_id, "notes"))

        paths = [d.path for d in policies] + [d.path for d in notes]
        if snap.data.get("phoneE164"):
            paths.append(self.phone_index_path(snap.data["phoneE164"]))
        # Customer document goes last so a partial failure never orphans children
        paths.append(snap.path)

        chunk = self.store.max_batch_ops
        for start in range(0, len(paths), chunk):
            batch = self.store.batch()
            for path in paths[start:start + chunk]:
                batch.delete(path)
            batch.commit()

        premium = sum(Policy.from_document(d).active_premium for d in policies)
        self.metrics.increment_customer_count(self.tenant, -1)
        if premium > 0:
            self.metrics.update_premium(self.tenant, -premium)
        if policies:
            self.metrics.recalculate_renewals(self.tenant)

        logger.info(
            f"[customers] {self.tenant.tenant_id}: deleted customer {customer_id} "
            f"({len(policies)} policies, {len(notes)} notes, premium {premium:.2f})"
        )
        return {
            "customer_id": customer_id,
            "policies_deleted": len(policies),
            "notes_deleted": len(notes),
            "premium_subtracted": premium,
        }

    # ── import lookups ───────────────────────────────────────────────

    def find_customer_by_name_address_zip(
        self, insured_name: str, address: str, zip_code: str
    ) -> Optional[DocumentSnapshot]:
        """Exact (name, street, zip) lookup over a bounded name-prefix scan."""
        wanted = customer_key(insured_name, address, zip_code)
        prefix = normalize_for_matching(insured_name)[:settings.IMPORT_NAME_PREFIX_LENGTH]
        if not prefix:
            return None
        candidates = self.store.query(
            self.customers_path,
            filters=[
                ("nameKey", ">=", prefix),
                ("nameKey", "<=", prefix + PREFIX_END),
            ],
            limit=settings.IMPORT_NAME_SCAN_LIMIT,
        )
        for doc in candidates:
            addr = doc.data.get("address") or {}
            if customer_key(doc.data.get("fullName", ""), addr.get("street") or "", addr.get("zip") or "") == wanted:
                return doc
        return None

    def find_existing_policy(
        self,
        customer_id: str,
        policy_type_normalized: str,
        effective_date: date,
        insurance_company: Optional[str],
        premium: Optional[float],
    ) -> Optional[DocumentSnapshot]:
        for doc in self.store.query(self.policies_path(customer_id)):
            if is_duplicate_policy(doc.data, policy_type_normalized, effective_date, insurance_company, premium):
                return doc
        return None

    # ── policies ─────────────────────────────────────────────────────

    def list_policies(self, customer_id: str) -> List[Policy]:
        docs = self.store.query(self.policies_path(customer_id), order_by="expirationDate")
        return [Policy.from_document(d) for d in docs]

    def save_policy(self, customer_id: str, form: PolicyIn, policy_id: Optional[str] = None) -> str:
        """Create (no ``policy_id``) or update a policy and keep metrics in step."""
        self._require_customer(customer_id)

        policy_type = normalize_policy_type(form.policy_type) or (
            form.policy_type if form.policy_type in POLICY_TYPES else None
        )
        if not policy_type:
            raise CustomerValidationError([f"Unknown policy type: {form.policy_type}"])

        term_months = form.term_months if policy_type == "Personal Auto" and form.term_months else 12
        try:
            policy = Policy(
                policy_type_normalized=policy_type,
                raw_policy_type=form.policy_type,
                effective_date=form.effective_date,
                expiration_date=form.expiration_date,
                insurance_company=(form.insurance_company or "").strip() or None,
                premium=form.premium,
                status=form.status,
                term_months=term_months,
                agency_id=self.tenant.tenant_id,
                customer_id=customer_id,
            )
        except ValueError as e:
            raise CustomerValidationError([str(e)]) from e

        doc = policy.to_document(exclude={"imported_at", "created_at", "updated_at"})
        doc["updatedAt"] = SERVER_TIMESTAMP

        if policy_id is None:
            policy_id = new_doc_id()
            doc["createdAt"] = SERVER_TIMESTAMP
            self.store.set(self.policy_path(customer_id, policy_id), doc)
            if policy.active_premium:
                self.metrics.update_premium(self.tenant, policy.active_premium)
            self.metrics.recalculate_renewals(self.tenant)
            return policy_id

        old_snap = self.store.get(self.policy_path(customer_id, policy_id))
        if old_snap is None:
            raise CustomerNotFound(f"Policy not found: {policy_id}")
        old = Policy.from_document(old_snap)
        self.store.set(self.policy_path(customer_id, policy_id), doc, merge=True)

        delta = policy.active_premium - old.active_premium
        if delta:
            self.metrics.update_premium(self.tenant, delta)
        if old.expiration_date != policy.expiration_date or old.status != policy.status:
            self.metrics.recalculate_renewals(self.tenant)
        return policy_id

    def delete_policy(self, customer_id: str, policy_id: str) -> None:
        snap = self.store.get(self.policy_path(customer_id, policy_id))
        if snap is None:
            raise CustomerNotFound(f"Policy not found: {policy_id}")
        policy = Policy.from_document(snap)
        self.store.delete(snap.path)
        if policy.active_premium:
            self.metrics.update_premium(self.tenant, -policy.active_premium)
        self.metrics.recalculate_renewals(self.tenant)
