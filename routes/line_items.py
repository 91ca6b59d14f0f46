"""
The (product, variant, quantity) shape shared by receive, sell, return and
liquidation-item building.
"""
from dataclasses import dataclass
from typing import Optional

from routes.errors import ValidationError
from routes.utils import parse_int


@dataclass(frozen=True)
class LineItem:
    product_id: int
    variant_id: Optional[int]
    quantity: int
    location_id: Optional[int] = None
    notes: Optional[str] = None

    @property
    def key(self):
        return (self.product_id, self.variant_id)

    @classmethod
    def from_dict(cls, data, index=0):
        if not isinstance(data, dict):
            raise ValidationError(f'items[{index}] must be an object')
        notes = data.get('notes')
        return cls(
            product_id=parse_int(data.get('product_id'), f'items[{index}].product_id', minimum=1),
            variant_id=parse_int(data.get('variant_id'), f'items[{index}].variant_id', minimum=1, required=False),
            quantity=parse_int(data.get('qty', data.get('quantity')), f'items[{index}].qty', minimum=1),
            location_id=parse_int(data.get('location_id'), f'items[{index}].location_id', minimum=1, required=False),
            notes=(str(notes).strip()[:500] or None) if notes is not None else None,
        )


def parse_line_items(items):
    """Parse a request ``items`` array; an empty or missing list is rejected."""
    if not isinstance(items, list) or not items:
        raise ValidationError('items must be a non-empty array', field='items')
    return [LineItem.from_dict(item, index=i) for i, item in enumerate(items)]
