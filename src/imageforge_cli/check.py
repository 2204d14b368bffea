from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from .plan import ImagePlan
from .store import CacheRecord, CacheStore

CheckState = Literal["up-to-date", "needs-run"]


@dataclass(frozen=True)
class ImageCheck:
    source: str
    fingerprint: str
    state: CheckState
    reason: str = ""
    record: Optional[CacheRecord] = None

    @property
    def hit(self) -> bool:
        return self.state == "up-to-date"


def evaluate_image(
    plan: ImagePlan,
    store: CacheStore,
    input_dir: Path,
    use_cache: bool = True,
) -> ImageCheck:
    """Compare one planned image against the cache and the files on disk.

    Never writes anything. The real run calls this to decide cache hits, so
    check mode and processing agree on what is stale.
    """
    source = plan.source.relative_path
    if not use_cache:
        return ImageCheck(source, plan.fingerprint, "needs-run", "cache disabled")

    record = store.lookup(plan.fingerprint)
    if record is None:
        return ImageCheck(source, plan.fingerprint, "needs-run", "no cached result for fingerprint")

    planned = sorted(o.path for o in plan.all_outputs())
    if sorted(record.entry.output_paths()) != planned:
        return ImageCheck(source, plan.fingerprint, "needs-run", "cached outputs differ from plan")

    if not store.is_intact(record, input_dir):
        return ImageCheck(source, plan.fingerprint, "needs-run", "tracked output missing or modified")

    return ImageCheck(source, plan.fingerprint, "up-to-date", record=record)

