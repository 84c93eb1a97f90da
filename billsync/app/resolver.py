"""
Maps storefront records onto internal customers and items.

Each lookup walks an ordered list of match strategies (external id first, then
the secondary key) and reports how the entity was obtained, so callers and
tests can tell a match from a creation.
"""
import json
from dataclasses import dataclass
from typing import Optional

from .amounts import to_decimal
from .errors import ValidationError

CUSTOMER_COLUMNS = """
    id, company_id, customer_code, name, email, phone, gstin, billing_address, shipping_address,
    status, external_customer_id
"""
ITEM_COLUMNS = """
    id, company_id, item_code, item_name, selling_price, hsn_sac_code, track_inventory,
    current_stock, available_stock, is_active, external_product_id
"""


@dataclass
class Resolution:
    entity: dict
    action: str  # found | created | updated
    matched_by: Optional[str] = None

    @property
    def id(self):
        return self.entity["id"]


def _clean(v) -> Optional[str]:
    s = str(v).strip() if v is not None else ""
    return s or None


def _customer_name(ext: dict) -> str:
    name = _clean(ext.get("name"))
    if name:
        return name
    full = f"{ext.get('first_name') or ''} {ext.get('last_name') or ''}".strip()
    return full or _clean(ext.get("email")) or f"Customer {ext.get('id')}"


def _customer_fields(ext: dict) -> dict:
    billing = ext.get("billing_address") or {}
    return {
        "customer_code": _clean(ext.get("customer_code")) or f"SF-{ext.get('id')}",
        "name": _customer_name(ext),
        "email": _clean(ext.get("email")),
        "phone": _clean(ext.get("phone")),
        "mobile": _clean(ext.get("mobile")) or _clean(ext.get("phone")),
        "billing_address": billing,
        "shipping_address": ext.get("shipping_address") or billing,
        "status": "active" if (ext.get("status") or "active") == "active" else "inactive",
        "external_customer_id": _clean(ext.get("id")),
    }


def _find_customer_by_external_id(cur, company_id: str, external_id: str):
    cur.execute(
        f"""
        SELECT {CUSTOMER_COLUMNS}
        FROM customers
        WHERE company_id = %s AND external_customer_id = %s
        ORDER BY created_at
        LIMIT 1
        """,
        (company_id, external_id),
    )
    return cur.fetchone()


def _find_customer_by_email(cur, company_id: str, email: str):
    cur.execute(
        f"""
        SELECT {CUSTOMER_COLUMNS}
        FROM customers
        WHERE company_id = %s AND lower(email) = lower(%s)
        ORDER BY created_at
        LIMIT 1
        """,
        (company_id, email),
    )
    return cur.fetchone()


def resolve_customer(cur, company_id: str, external: Optional[dict], *, force_update: bool = False) -> Resolution:
    ext = external or {}
    external_id = _clean(ext.get("id"))
    email = _clean(ext.get("email"))
    if not external_id and not email and not _clean(ext.get("name")):
        raise ValidationError("customer record has no id, email or name")

    customer, matched_by = None, None
    if external_id:
        customer = _find_customer_by_external_id(cur, company_id, external_id)
        matched_by = "external_id" if customer else None
    if not customer and email:
        customer = _find_customer_by_email(cur, company_id, email)
        matched_by = "email" if customer else None

    fields = _customer_fields(ext)
    if customer and force_update:
        cur.execute(
            f"""
            UPDATE customers
            SET customer_code = %s, name = %s, email = %s, phone = %s, mobile = %s,
                billing_address = %s::jsonb, shipping_address = %s::jsonb, status = %s,
                external_customer_id = COALESCE(%s, external_customer_id),
                external_last_sync = now(), updated_at = now()
            WHERE company_id = %s AND id = %s
            RETURNING {CUSTOMER_COLUMNS}
            """,
            (
                fields["customer_code"],
                fields["name"],
                fields["email"],
                fields["phone"],
                fields["mobile"],
                json.dumps(fields["billing_address"]),
                json.dumps(fields["shipping_address"]),
                fields["status"],
                fields["external_customer_id"],
                company_id,
                customer["id"],
            ),
        )
        return Resolution(cur.fetchone(), "updated", matched_by)

    if customer:
        if external_id and not customer.get("external_customer_id"):
            # Matched on email: remember the storefront id for next time.
            cur.execute(
                """
                UPDATE customers
                SET external_customer_id = %s, external_last_sync = now(), updated_at = now()
                WHERE company_id = %s AND id = %s
                """,
                (external_id, company_id, customer["id"]),
            )
            customer = {**customer, "external_customer_id": external_id}
        return Resolution(customer, "found", matched_by)

    cur.execute(
        f"""
        INSERT INTO customers
          (id, company_id, customer_code, customer_type, name, email, phone, mobile,
           billing_address, shipping_address, status, external_customer_id, external_last_sync)
        VALUES
          (gen_random_uuid(), %s, %s, 'b2c', %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, now())
        RETURNING {CUSTOMER_COLUMNS}
        """,
        (
            company_id,
            fields["customer_code"],
            fields["name"],
            fields["email"],
            fields["phone"],
            fields["mobile"],
            json.dumps(fields["billing_address"]),
            json.dumps(fields["shipping_address"]),
            fields["status"],
            fields["external_customer_id"],
        ),
    )
    return Resolution(cur.fetchone(), "created", None)


def resolve_item(cur, company_id: str, product_id=None, sku=None) -> Optional[Resolution]:
    product_id = _clean(product_id)
    sku = _clean(sku)
    if product_id:
        cur.execute(
            f"""
            SELECT {ITEM_COLUMNS}
            FROM items
            WHERE company_id = %s AND external_product_id = %s
            ORDER BY created_at
            LIMIT 1
            """,
            (company_id, product_id),
        )
        row = cur.fetchone()
        if row:
            return Resolution(row, "found", "external_id")
    if sku:
        cur.execute(
            f"""
            SELECT {ITEM_COLUMNS}
            FROM items
            WHERE company_id = %s AND item_code = %s
            LIMIT 1
            """,
            (company_id, sku),
        )
        row = cur.fetchone()
        if row:
            return Resolution(row, "found", "sku")
    return None


def _product_fields(product: dict, existing: Optional[dict] = None) -> dict:
    price = product.get("price")
    return {
        "item_code": _clean(product.get("sku")) or (existing or {}).get("item_code") or f"SF-{product.get('id')}",
        "item_name": _clean(product.get("name")) or (existing or {}).get("item_name") or f"Product {product.get('id')}",
        "description": product.get("description"),
        "selling_price": to_decimal(price) if price not in (None, "") else to_decimal((existing or {}).get("selling_price")),
        "category": product.get("category"),
        "hsn_sac_code": _clean(product.get("hsn_code")),
        "is_active": (product.get("status") or "active") == "active",
        "external_product_id": _clean(product.get("id")),
    }


def _update_item(cur, company_id: str, item_id: str, fields: dict) -> dict:
    cur.execute(
        f"""
        UPDATE items
        SET item_name = %s, description = %s, selling_price = %s, category = %s,
            hsn_sac_code = COALESCE(%s, hsn_sac_code), is_active = %s,
            external_product_id = %s, external_last_sync = now(), updated_at = now()
        WHERE company_id = %s AND id = %s
        RETURNING {ITEM_COLUMNS}
        """,
        (
            fields["item_name"],
            fields["description"],
            fields["selling_price"],
            fields["category"],
            fields["hsn_sac_code"],
            fields["is_active"],
            fields["external_product_id"],
            company_id,
            item_id,
        ),
    )
    return cur.fetchone()


def update_item_from_product(cur, company_id: str, product: dict) -> Optional[Resolution]:
    """Webhook path: only items already correlated to the product are touched."""
    found = resolve_item(cur, company_id, product_id=product.get("id"))
    if not found:
        return None
    return Resolution(_update_item(cur, company_id, found.id, _product_fields(product, found.entity)), "updated", found.matched_by)


def upsert_item_from_product(cur, company_id: str, product: dict) -> Resolution:
    """
    Sync path: update a correlated item or create a new one. Stock is never
    written here; new items start at zero and the caller books opening stock
    through the inventory ledger.
    """
    found = resolve_item(cur, company_id, product_id=product.get("id"), sku=product.get("sku"))
    if found:
        return Resolution(_update_item(cur, company_id, found.id, _product_fields(product, found.entity)), "updated", found.matched_by)

    fields = _product_fields(product)
    cur.execute(
        f"""
        INSERT INTO items
          (id, company_id, item_code, item_name, description, selling_price, category, hsn_sac_code,
           track_inventory, current_stock, available_stock, is_active, external_product_id, external_last_sync)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, true, 0, 0, %s, %s, now())
        RETURNING {ITEM_COLUMNS}
        """,
        (
            company_id,
            fields["item_code"],
            fields["item_name"],
            fields["description"],
            fields["selling_price"],
            fields["category"],
            fields["hsn_sac_code"],
            fields["is_active"],
            fields["external_product_id"],
        ),
    )
    return Resolution(cur.fetchone(), "created", None)
