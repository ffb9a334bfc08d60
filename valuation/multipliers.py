"""
Position x age x overall multiplier matrix.

Every run rebuilds the matrix wholesale from the sales corpus:

1. Sales are grouped into cells by (position, age bucket, overall bucket)
   using the player's attributes at time of sale.
2. The baseline cell is the one with the most sales among cells with a
   positive central price and at least `min_sample_size` sales.
3. Every cell with at least `min_sample_size` sales gets
   multiplier = central price / baseline central price. Smaller cells get
   no multiplier at all.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Any
import pandas as pd
from models.base import Confidence
from schemas.marketplace import SaleRecord
from valuation.buckets import BucketKey, BucketScheme
from valuation.statistics import central_price, trim_outliers


def confidence_for(sample_count: int) -> Confidence:
    if sample_count < 5:
        return Confidence.LOW
    if sample_count < 20:
        return Confidence.MEDIUM
    return Confidence.HIGH


def lower_confidence(confidence: Confidence) -> Confidence:
    if confidence == Confidence.HIGH:
        return Confidence.MEDIUM
    return Confidence.LOW


@dataclass
class MultiplierCell:
    key: BucketKey
    sample_count: int
    central_price: float
    multiplier: Optional[float] = None

    @property
    def confidence(self) -> Confidence:
        return confidence_for(self.sample_count)

    def to_dict(self, is_baseline: bool = False) -> Dict[str, Any]:
        return {
            "position": self.key.position,
            "age_bucket": self.key.age_bucket,
            "overall_bucket": self.key.overall_bucket,
            "sample_count": self.sample_count,
            "central_price": self.central_price,
            "multiplier": self.multiplier,
            "confidence": self.confidence.value,
            "is_baseline": is_baseline,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MultiplierCell":
        return cls(
            key=BucketKey(data["position"], int(data["age_bucket"]), int(data["overall_bucket"])),
            sample_count=int(data["sample_count"]),
            central_price=float(data["central_price"]),
            multiplier=data.get("multiplier"),
        )


@dataclass
class MultiplierMatrix:
    scheme: BucketScheme
    min_sample_size: int
    cells: Dict[BucketKey, MultiplierCell] = field(default_factory=dict)
    baseline: Optional[BucketKey] = None

    @property
    def is_empty(self) -> bool:
        return not self.cells

    @property
    def baseline_cell(self) -> Optional[MultiplierCell]:
        return self.cells.get(self.baseline) if self.baseline else None

    @property
    def baseline_price(self) -> Optional[float]:
        cell = self.baseline_cell
        return cell.central_price if cell else None

    @property
    def priced_cells(self) -> List[MultiplierCell]:
        return [c for c in self.cells.values() if c.multiplier is not None]

    def lookup(self, key: BucketKey) -> Optional[MultiplierCell]:
        cell = self.cells.get(key)
        if cell is None or cell.multiplier is None:
            return None
        return cell

    def nearest(self, key: BucketKey, radius: int) -> Optional[MultiplierCell]:
        """
        Closest priced cell by overall-bucket distance.

        Candidates share the key's position group and age bucket and sit at
        most `radius` overall buckets away. Ties prefer the exact position,
        then the larger sample.
        """
        candidates = []
        for cell in self.priced_cells:
            if cell.key == key:
                continue
            if cell.key.group != key.group or cell.key.age_bucket != key.age_bucket:
                continue
            distance = self.scheme.overall_distance(cell.key, key)
            if distance > radius:
                continue
            candidates.append((distance, cell.key.position != key.position, -cell.sample_count, cell.key, cell))

        if not candidates:
            return None
        return min(candidates, key=lambda c: c[:4])[4]

    def to_cells(self) -> List[Dict[str, Any]]:
        return [
            cell.to_dict(is_baseline=(key == self.baseline))
            for key, cell in sorted(self.cells.items())
        ]

    @classmethod
    def from_cells(cls, cells: List[Dict[str, Any]], scheme: BucketScheme, min_sample_size: int) -> "MultiplierMatrix":
        matrix = cls(scheme=scheme, min_sample_size=min_sample_size)
        for data in cells:
            cell = MultiplierCell.from_dict(data)
            matrix.cells[cell.key] = cell
            if data.get("is_baseline"):
                matrix.baseline = cell.key
        return matrix


def build_matrix(
    sales: Iterable[SaleRecord],
    scheme: BucketScheme,
    min_sample_size: int,
    tendency: str = "mean",
    trim: bool = False
) -> MultiplierMatrix:
    matrix = MultiplierMatrix(scheme=scheme, min_sample_size=min_sample_size)

    rows = [
        {
            "position": sale.player_position.upper(),
            "age_bucket": scheme.age_bucket(sale.player_age),
            "overall_bucket": scheme.overall_bucket(sale.player_overall),
            "price": sale.price,
        }
        for sale in sales
        if sale.player_position and sale.player_age is not None and sale.player_overall is not None
    ]
    if not rows:
        return matrix

    frame = pd.DataFrame(rows)
    for (position, age_bucket, overall_bucket), prices in frame.groupby(
        ["position", "age_bucket", "overall_bucket"]
    )["price"]:
        if trim:
            prices = trim_outliers(prices)
        key = BucketKey(str(position), int(age_bucket), int(overall_bucket))
        matrix.cells[key] = MultiplierCell(
            key=key,
            sample_count=int(len(prices)),
            central_price=central_price(prices, tendency),
        )

    eligible = [
        cell for cell in matrix.cells.values()
        if cell.central_price > 0 and cell.sample_count >= min_sample_size
    ]
    if not eligible:
        return matrix

    baseline = min(eligible, key=lambda c: (-c.sample_count, c.key))
    matrix.baseline = baseline.key

    for cell in matrix.cells.values():
        if cell.sample_count >= min_sample_size:
            cell.multiplier = cell.central_price / baseline.central_price

    return matrix
