"""
Position, age and overall bucketing for the multiplier matrix
"""

from dataclasses import dataclass
from typing import Optional

POSITION_GROUPS = {
    "GK": "GK",
    "CB": "DEF",
    "LB": "DEF",
    "RB": "DEF",
    "LWB": "DEF",
    "RWB": "DEF",
    "CDM": "MID",
    "CM": "MID",
    "CAM": "MID",
    "LM": "MID",
    "RM": "MID",
    "LW": "FWD",
    "RW": "FWD",
    "CF": "FWD",
    "ST": "FWD",
}


def position_group(position: str) -> str:
    """Unknown positions form a group of their own"""
    return POSITION_GROUPS.get(position, position)


@dataclass(frozen=True, order=True)
class BucketKey:
    """A cell of the matrix; buckets are identified by their lower bound"""
    position: str
    age_bucket: int
    overall_bucket: int

    @property
    def group(self) -> str:
        return position_group(self.position)

    def __str__(self) -> str:
        return f"{self.position}|{self.age_bucket}|{self.overall_bucket}"


@dataclass(frozen=True)
class BucketScheme:
    """
    Fixed-width bucketing.

    Ages are clamped to [age_min, age_max] and overall ratings to
    [overall_min, overall_max] before bucketing, so outliers land in the
    edge buckets instead of creating sparse cells of their own.
    """
    age_width: int = 2
    overall_width: int = 3
    age_min: int = 16
    age_max: int = 40
    overall_min: int = 40
    overall_max: int = 99

    def __post_init__(self):
        if self.age_width < 1 or self.overall_width < 1:
            raise ValueError("bucket widths must be positive")

    @staticmethod
    def _bucket(value: int, low: int, high: int, width: int) -> int:
        clamped = min(max(int(value), low), high)
        return low + ((clamped - low) // width) * width

    def age_bucket(self, age: int) -> int:
        return self._bucket(age, self.age_min, self.age_max, self.age_width)

    def overall_bucket(self, overall: int) -> int:
        return self._bucket(overall, self.overall_min, self.overall_max, self.overall_width)

    def key_for(self, position: Optional[str], age: Optional[int], overall: Optional[int]) -> Optional[BucketKey]:
        if not position or age is None or overall is None:
            return None
        return BucketKey(
            position=position.upper(),
            age_bucket=self.age_bucket(age),
            overall_bucket=self.overall_bucket(overall),
        )

    def overall_distance(self, a: BucketKey, b: BucketKey) -> int:
        """Distance in whole overall buckets"""
        return abs(a.overall_bucket - b.overall_bucket) // self.overall_width

    def fingerprint(self) -> str:
        return (
            f"age{self.age_width}:{self.age_min}-{self.age_max}/"
            f"ovr{self.overall_width}:{self.overall_min}-{self.overall_max}"
        )
