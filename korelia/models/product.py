"""Product records (products.json): pricing, packs and stock helpers.

`stock` is an integer, or missing/null for untracked products. A pack is
a product whose category (or type) is "pack"; its components are listed
under one of several aliases (pack_items, components, bundle, ...).
"""

PACK_ALIASES = ("pack_items", "components", "bundle", "contents", "items", "products_included")


def price_cents(product):
    """Unit price in cents: `price_cents` if set, else round(price * 100)."""
    value = product.get("price_cents")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    try:
        return int(round(float(product.get("price") or 0) * 100))
    except (TypeError, ValueError):
        return 0


def tracked_stock(product):
    """Integer stock, or None when the product's stock is not tracked."""
    stock = product.get("stock") if product else None
    if isinstance(stock, bool) or not isinstance(stock, (int, float)):
        return None
    return int(stock)


def is_pack(product):
    return str(product.get("category") or product.get("type") or "").lower() == "pack"


def norm_qty(entry):
    """Positive quantity from a cart/pack line (qty, quantity or q); defaults to 1."""
    if not isinstance(entry, dict):
        return 1
    raw = entry.get("qty", entry.get("quantity", entry.get("q", 1)))
    try:
        qty = int(raw)
    except (TypeError, ValueError):
        return 1
    return qty if qty > 0 else 1


def resolve_product_id(ref, catalog):
    """Product id from an id, a slug, or a dict carrying id/slug/productId."""
    if not ref:
        return None
    if isinstance(ref, dict):
        if ref.get("id") is not None and catalog.get(ref["id"]):
            return str(ref["id"])
        if ref.get("slug") and catalog.by_slug(ref["slug"]):
            return str(catalog.by_slug(ref["slug"])["id"])
        if ref.get("productId") is not None and catalog.get(ref["productId"]):
            return str(ref["productId"])
        return None
    if catalog.get(ref):
        return str(ref)
    product = catalog.by_slug(ref)
    return str(product["id"]) if product else None


def pack_definition(product, catalog):
    """Normalised [{id, qty}] components of a pack, or None."""
    if not isinstance(product, dict):
        return None
    for key in PACK_ALIASES:
        raw = product.get(key)
        if not isinstance(raw, list) or not raw:
            continue
        components = []
        for entry in raw:
            pid = resolve_product_id(entry, catalog)
            if pid:
                components.append({"id": pid, "qty": norm_qty(entry)})
        if components:
            return components
    return None


def expand_items_to_stock_map(items, catalog):
    """Flatten cart lines into {product_id: quantity to take from stock}.

    Handles custom packs (line carries components), predefined packs
    (components read from the catalog) and plain products.
    """
    wanted = {}
    for line in items if isinstance(items, list) else []:
        line_qty = norm_qty(line)

        components = line.get("components") if isinstance(line, dict) else None
        if isinstance(components, list) and components:
            for comp in components:
                cid = resolve_product_id(comp, catalog) or (
                    str(comp["id"]) if isinstance(comp, dict) and comp.get("id") is not None else None
                )
                if cid:
                    wanted[cid] = wanted.get(cid, 0) + norm_qty(comp) * line_qty
            continue

        ref = line.get("id") if isinstance(line, dict) else line
        pid = resolve_product_id(ref, catalog)
        if pid is None and ref is not None:
            pid = str(ref)
        if pid is None:
            continue
        definition = pack_definition(catalog.get(pid), catalog)
        if definition:
            for comp in definition:
                wanted[comp["id"]] = wanted.get(comp["id"], 0) + comp["qty"] * line_qty
            continue
        wanted[pid] = wanted.get(pid, 0) + line_qty
    return wanted


def effective_stock(product, catalog):
    """Available units. Packs: min over components of floor(stock / qty),
    capped by the pack's own stock. A component without tracked stock
    makes the pack unavailable.
    """
    definition = pack_definition(product, catalog)
    if not definition:
        return tracked_stock(product)
    available = None
    for comp in definition:
        stock = tracked_stock(catalog.get(comp["id"]))
        if stock is None:
            return 0
        units = stock // max(1, comp["qty"])
        available = units if available is None else min(available, units)
    own = tracked_stock(product)
    if own is not None:
        available = min(available, own)
    return max(0, available or 0)


def public_product(product, catalog):
    """Catalog projection for GET /api/products."""
    return {
        "id": str(product.get("id")),
        "slug": str(product.get("slug")),
        "name": product.get("name"),
        "brand": product.get("brand"),
        "image": product.get("image"),
        "images": product.get("images") if isinstance(product.get("images"), list) else None,
        "price_cents": price_cents(product),
        "stock": effective_stock(product, catalog) if is_pack(product) else tracked_stock(product),
        "category": product.get("category") or product.get("type"),
        "skin_types": product.get("skin_types") if isinstance(product.get("skin_types"), list) else [],
        "tags": product.get("tags") if isinstance(product.get("tags"), list) else [],
    }
