"""Line items, their identity key, cart totals and snapshot encoding.

A line item is one entry of a cart or of an order snapshot. Two entries are the
same line when the menu item id, the special instructions and the ordered list
of customizations all match.

Snapshots stored with an order use the keys ``id, name, price, quantity, image,
customizations, specialInstructions``. Older rows may hold the snapshot as JSON
text or as an already decoded list; :func:`decode_line_items` accepts both.
"""

import json
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from canteen.errors import SnapshotDecodeError

TAX_RATE = 0.08


class LineKey(NamedTuple):
    item_id: str
    special_instructions: Optional[str]
    customizations: Tuple[str, ...]


def normalize_instructions(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def line_key(item_id, customizations: Optional[Sequence[str]] = None,
             special_instructions: Optional[str] = None) -> LineKey:
    return LineKey(str(item_id), normalize_instructions(special_instructions), tuple(customizations or ()))


class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(
        validation_alias=AliasChoices("id", "item_id", "menu_item_id"),
        serialization_alias="id",
    )
    name: str
    unit_price: float = Field(
        ge=0,
        validation_alias=AliasChoices("price", "unit_price"),
        serialization_alias="price",
    )
    quantity: int = Field(ge=1)
    image: Optional[str] = Field(default=None, validation_alias=AliasChoices("image", "image_url"))
    customizations: List[str] = Field(default_factory=list)
    special_instructions: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("specialInstructions", "special_instructions"),
        serialization_alias="specialInstructions",
    )

    @field_validator("item_id", mode="before")
    @classmethod
    def _id_as_text(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("customizations", mode="before")
    @classmethod
    def _missing_customizations(cls, v):
        return [] if v is None else v

    @field_validator("special_instructions", mode="before")
    @classmethod
    def _blank_instructions(cls, v):
        return normalize_instructions(v) if isinstance(v, str) else v

    @property
    def key(self) -> LineKey:
        return line_key(self.item_id, self.customizations, self.special_instructions)

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity

    def to_snapshot(self) -> dict:
        return self.model_dump(by_alias=True)


class CartTotals(NamedTuple):
    subtotal: float
    tax: float
    total: float
    item_count: int


def compute_subtotal(items: Iterable[LineItem]) -> float:
    subtotal = 0.0
    for item in items:
        subtotal += item.unit_price * item.quantity
    return subtotal


def compute_tax(subtotal: float) -> float:
    return round(subtotal * TAX_RATE, 2)


def compute_totals(items: Sequence[LineItem]) -> CartTotals:
    subtotal = compute_subtotal(items)
    tax = compute_tax(subtotal)
    return CartTotals(
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
        item_count=sum(item.quantity for item in items),
    )


# Everything a stored snapshot may look like before decoding
SnapshotEncoding = Union[None, str, bytes, Sequence[dict], Sequence[LineItem]]


def decode_line_items(raw: SnapshotEncoding) -> List[LineItem]:
    """Normalize any stored snapshot encoding into fresh ``LineItem`` objects."""
    if raw is None:
        return []
    data = raw
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SnapshotDecodeError(f"Snapshot is not UTF-8: {e}") from e
    if isinstance(data, str):
        if not data.strip():
            return []
        try:
            data = json.loads(data)
        except ValueError as e:
            raise SnapshotDecodeError(f"Snapshot is not valid JSON: {e}") from e
    if not isinstance(data, (list, tuple)):
        raise SnapshotDecodeError(f"Expected a list of line items, got {type(data).__name__}")

    items = []
    for entry in data:
        if isinstance(entry, LineItem):
            items.append(entry.model_copy(deep=True))
            continue
        try:
            items.append(LineItem.model_validate(entry))
        except ValidationError as e:
            raise SnapshotDecodeError(f"Invalid line item in snapshot: {e}") from e
    return items


def encode_line_items(items: Iterable[LineItem]) -> str:
    return json.dumps([item.to_snapshot() for item in items])
