"""
Database Schemas

MongoDB collection schemas for the album ordering service, as Pydantic models.
Each top-level model represents a collection; the collection name is the
lowercased class name:
- ClientAlbum -> "clientalbum" collection
- Material -> "material" collection
- Size -> "size" collection
- EngravingOption -> "engravingoption" collection
- GeneralSettings -> "settings" collection (single document)
- Order -> "order" collection

Money is Decimal throughout. Designs and colors are embedded in their parent
and have no collection of their own.
"""
import json
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ALBUM_COLLECTION = "clientalbum"
MATERIAL_COLLECTION = "material"
SIZE_COLLECTION = "size"
ENGRAVING_COLLECTION = "engravingoption"
SETTINGS_COLLECTION = "settings"
ORDER_COLLECTION = "order"

GENERAL_SETTINGS_ID = "general"


def new_id() -> str:
    return uuid.uuid4().hex


class OrderStatus(str, Enum):
    SUBMITTED = "submitted"
    ORDERED = "ordered"
    SHIPPED = "shipped"


class CreditType(str, Enum):
    NONE = "none"
    FREE_ALBUM = "free_album"
    DOLLAR = "dollar"


class PaymentStatus(str, Enum):
    NONE = "none"
    FREE = "free"
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"


# Payment states a late or repeated gateway success/failure event must not overwrite.
SETTLED_PAYMENT_STATUSES = [
    PaymentStatus.PAID.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.PARTIAL_REFUND.value,
]


# --------------------- Catalog ---------------------

class TextureRegion(BaseModel):
    """Crop of a texture image used as a color swatch."""
    x: float
    y: float
    zoom: float = Field(1.0, gt=0)


class Color(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    type: str = Field("solid", description="solid | texture")
    color_value: Optional[str] = Field("#000000", description="Hex color for solid swatches")
    texture_ref: Optional[str] = Field(None, description="Asset ref of the texture image")
    texture_region: Optional[TextureRegion] = None
    preview_ref: Optional[str] = None

    @field_validator("type")
    @classmethod
    def check_type(cls, value: str) -> str:
        return value if value in ("solid", "texture") else "solid"

    @field_validator("color_value")
    @classmethod
    def check_hex(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        digits = value[1:] if value.startswith("#") else value
        if len(digits) not in (3, 6) or any(c not in "0123456789abcdefABCDEF" for c in digits):
            raise ValueError("color_value must be a hex color like #1a2b3c")
        return "#" + digits.lower()

    @field_validator("texture_region", mode="before")
    @classmethod
    def parse_region(cls, value):
        # Form posts carry the region as a JSON string; it is decoded here, once.
        if isinstance(value, str):
            if not value.strip():
                return None
            try:
                return json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f"texture_region is not valid JSON: {e.msg}")
        return value

    @model_validator(mode="after")
    def check_swatch(self) -> "Color":
        if self.type == "texture":
            self.color_value = None
        else:
            self.texture_ref = None
            self.texture_region = None
            if self.color_value is None:
                self.color_value = "#000000"
        return self


class Material(BaseModel):
    """
    Album cover materials
    Collection name: "material"
    """
    id: str = Field(default_factory=new_id, description="Stable opaque key")
    name: str = Field(..., min_length=1)
    upcharge: Decimal = Field(Decimal("0"), ge=0)
    allow_engraving: bool = False
    restricted_sizes: List[str] = Field(default_factory=list, description="Allowed size ids; empty means all sizes")
    image_ref: Optional[str] = None
    colors: List[Color] = Field(default_factory=list)


class Size(BaseModel):
    """
    Album sizes
    Collection name: "size"
    """
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    dimensions: str = ""
    upcharge: Decimal = Field(Decimal("0"), ge=0)
    image_ref: Optional[str] = None


class EngravingOption(BaseModel):
    """
    Engraving methods
    Collection name: "engravingoption"
    """
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    upcharge: Decimal = Field(Decimal("0"), ge=0)
    character_limit: int = Field(0, ge=0, description="0 means no limit")
    fonts: List[str] = Field(default_factory=list)
    description: str = ""


class GeneralSettings(BaseModel):
    """
    Store-wide settings
    Collection name: "settings", document id "general"
    """
    currency: str = Field("USD", min_length=3, max_length=3)
    currency_symbol: str = "$"
    currency_position: str = Field("before", description="before | after")

    @field_validator("currency_position")
    @classmethod
    def check_position(cls, value: str) -> str:
        return value if value in ("before", "after") else "before"


class Design(BaseModel):
    id: str = Field(default_factory=new_id, description="Stable id, kept across edits")
    name: str = ""
    base_price: Decimal = Field(Decimal("0"), ge=0)
    free_album_credits: int = Field(0, ge=0, description="Number of albums covered in full (base price)")
    dollar_credit: Decimal = Field(Decimal("0"), ge=0, description="Dollar credit pool for this design")
    cover_ref: Optional[str] = None
    proof_ref: Optional[str] = None


class ShippingAddress(BaseModel):
    name: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""

    def one_line(self) -> str:
        parts = [self.name, self.address1, self.address2, self.city, f"{self.state} {self.zip}".strip()]
        return ", ".join(p for p in parts if p)


class SavedAddress(ShippingAddress):
    """A shipping address the client kept on the album for reuse."""
    id: str = Field(default_factory=lambda: f"addr_{new_id()[:13]}")


class ClientAlbum(BaseModel):
    """
    Per-client order forms
    Collection name: "clientalbum"
    """
    id: Optional[str] = None
    title: str = Field(..., min_length=1)
    client_name: str = ""
    client_email: Optional[str] = None
    client_phone: str = ""
    designs: List[Design] = Field(default_factory=list)
    saved_addresses: List[SavedAddress] = Field(default_factory=list)


# --------------------- Orders ---------------------

class Order(BaseModel):
    """
    Album orders (one configured album each)
    Collection name: "order"
    """
    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    client_album_id: str
    album_name: str
    cart_token: Optional[str] = None
    status: OrderStatus = OrderStatus.SUBMITTED

    design_index: int = Field(..., ge=0)
    design_id: Optional[str] = None
    design_name: str = ""
    design_proof_ref: Optional[str] = None
    base_price: Decimal = Decimal("0")

    material_id: str = ""
    material_name: str = ""
    material_upcharge: Decimal = Decimal("0")
    color_id: str = ""
    color_name: str = ""

    size_id: str = ""
    size_name: str = ""
    size_upcharge: Decimal = Decimal("0")

    engraving_option_id: str = ""
    engraving_method: str = ""
    engraving_text: str = ""
    engraving_font: str = ""
    engraving_upcharge: Decimal = Decimal("0")

    credit_type: CreditType = CreditType.NONE
    applied_credits: Decimal = Decimal("0")

    shipping: ShippingAddress = Field(default_factory=ShippingAddress)

    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    client_notes: str = ""
    photographer_notes: str = ""
    checkout_ref: Optional[str] = None

    payment_status: PaymentStatus = PaymentStatus.NONE
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_error: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_id: Optional[str] = None

    submitted_at: Optional[datetime] = None
    ordered_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
