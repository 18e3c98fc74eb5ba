import re
from typing import Dict, List, Optional, Tuple

from .orders import WHOLE_BOTTLE, from_baisa, safe_float, safe_positive_int, to_baisa

IMAGE_BUCKET = "fragrance-images"
IMAGE_CONTENT_TYPE = "image/png"
DEFAULT_MAX_QUANTITY = 50

image_filename_regex = re.compile(r"^[a-z0-9-]+\.png$")
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def slugify(name: Optional[str]) -> str:
    slug = str(name or "").lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def image_filename(slug: Optional[str]) -> str:
    cleaned = re.sub(r"\s+", "-", str(slug or "").lower().strip())
    cleaned = re.sub(r"[^a-z0-9-]", "", cleaned)
    return f"{cleaned}.png"


def is_valid_image_filename(filename: Optional[str]) -> bool:
    return bool(filename and image_filename_regex.match(filename))


def strip_bucket_prefix(path: Optional[str]) -> str:
    value = str(path or "").strip().lstrip("/")
    prefix = f"{IMAGE_BUCKET}/"
    if value.startswith(prefix):
        value = value[len(prefix):]
    return value


def looks_like_png(data: bytes) -> bool:
    return data.startswith(PNG_SIGNATURE)


def validate_image_upload(
    filename: Optional[str], mimetype: Optional[str], data: bytes, max_bytes: int
) -> Optional[str]:
    if not data:
        return "No image file provided"
    is_png_name = str(filename or "").lower().endswith(".png")
    if mimetype != IMAGE_CONTENT_TYPE and not is_png_name:
        return "Only PNG images are allowed"
    if not looks_like_png(data):
        return "Only PNG images are allowed"
    if len(data) > max_bytes:
        return f"Image must be smaller than {max_bytes // (1024 * 1024)}MB"
    return None


def _variant_price_cents(variant: Dict) -> Optional[int]:
    if variant.get("price_cents") not in (None, ""):
        cents = safe_positive_int(variant.get("price_cents"), 0)
        return cents or None
    price = safe_float(variant.get("price"), 0.0)
    if price <= 0:
        return None
    return to_baisa(price)


def build_variant_row(fragrance_id, variant) -> Optional[Dict]:
    """Validate one admin variant into a ``variants`` row, or None if invalid.

    A whole bottle is always valid and carries neither size nor price. Other
    variants need a positive ``size_ml`` and a positive price given either as
    ``price`` in OMR or ``price_cents`` in baisa.
    """
    if not isinstance(variant, dict):
        return None

    max_quantity = safe_positive_int(variant.get("max_quantity"), 0) or DEFAULT_MAX_QUANTITY
    sku = str(variant.get("sku") or "").strip() or None
    if variant.get("is_whole_bottle"):
        return {
            "fragrance_id": fragrance_id,
            "size_ml": None,
            "price_cents": None,
            "sku": sku,
            "is_whole_bottle": True,
            "max_quantity": max_quantity,
            "in_stock": True,
        }

    size_ml = variant.get("size_ml")
    if isinstance(size_ml, bool) or not isinstance(size_ml, (int, float)) or size_ml <= 0:
        return None
    price_cents = _variant_price_cents(variant)
    if not price_cents:
        return None

    return {
        "fragrance_id": fragrance_id,
        "size_ml": size_ml,
        "price_cents": price_cents,
        "sku": sku,
        "is_whole_bottle": False,
        "max_quantity": max_quantity,
        "in_stock": True,
    }


def build_variant_rows(fragrance_id, variants) -> Tuple[List[Dict], Optional[str]]:
    if not isinstance(variants, list) or not variants:
        return [], "At least one variant is required"
    rows = [row for row in (build_variant_row(fragrance_id, v) for v in variants) if row]
    if not rows:
        return [], "At least one valid variant is required"
    return rows, None


def variant_size_label(variant: Dict) -> str:
    if variant.get("is_whole_bottle"):
        return WHOLE_BOTTLE
    size_ml = variant.get("size_ml")
    if isinstance(size_ml, float) and size_ml.is_integer():
        size_ml = int(size_ml)
    return f"{size_ml}ml"


def serialize_variant(variant: Dict, admin: bool = False) -> Dict:
    whole_bottle = bool(variant.get("is_whole_bottle"))
    price = None if whole_bottle else from_baisa(variant.get("price_cents"))
    serialized = {
        "id": variant.get("id"),
        "size": variant_size_label(variant),
        "size_ml": variant.get("size_ml"),
        "price": price,
        "price_display": "Contact for pricing" if whole_bottle else f"{price:.3f} OMR",
        "is_whole_bottle": whole_bottle,
        "max_quantity": variant.get("max_quantity") or DEFAULT_MAX_QUANTITY,
        "in_stock": variant.get("in_stock", True) is not False,
    }
    if admin:
        serialized["price_cents"] = variant.get("price_cents")
        serialized["sku"] = variant.get("sku")
    return serialized


def group_variants(variants: List[Dict]) -> Dict[object, List[Dict]]:
    grouped: Dict[object, List[Dict]] = {}
    for variant in variants:
        grouped.setdefault(variant.get("fragrance_id"), []).append(variant)
    return grouped


def serialize_fragrance(
    fragrance: Dict, variants: List[Dict], image_url: Optional[str] = None, admin: bool = False
) -> Dict:
    serialized = {
        "id": fragrance.get("id"),
        "name": fragrance.get("name") or "",
        "slug": fragrance.get("slug") or "",
        "brand": fragrance.get("brand") or "",
        "description": fragrance.get("description") or "",
        "image_path": fragrance.get("image_path"),
        "image_url": image_url,
        "variants": [serialize_variant(variant, admin=admin) for variant in variants],
        "created_at": fragrance.get("created_at"),
    }
    if admin:
        serialized["hidden"] = bool(fragrance.get("hidden"))
        serialized["updated_at"] = fragrance.get("updated_at")
        serialized["variant_count"] = len(variants)
    return serialized


def catalogue_stats(fragrances: List[Dict]) -> Dict[str, int]:
    hidden = sum(1 for fragrance in fragrances if fragrance.get("hidden"))
    return {
        "total": len(fragrances),
        "visible": len(fragrances) - hidden,
        "hidden": hidden,
        "variants": sum(len(fragrance.get("variants") or []) for fragrance in fragrances),
    }
