"""Per-sample read accounting through the pipeline stages."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

import numpy as np
import pandas as pd

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

STAGES = ("input", "filtered", "denoised_forward", "denoised_reverse", "merged", "nonchim")

# stage -> the stage its losses are measured against
REFERENCE_STAGE = {
    "filtered": "input",
    "denoised_forward": "filtered",
    "denoised_reverse": "filtered",
    "merged": "denoised_forward",
    "nonchim": "merged",
}


class ReadTracker:
    """Read counts of each sample at each stage."""

    def __init__(self) -> None:
        self._counts: Dict[str, Dict[str, int]] = {}

    def record(self, sample_id: str, stage: str, count: int) -> None:
        if stage not in STAGES:
            raise ValidationError(f"unknown tracking stage: {stage!r}", {"stages": list(STAGES)})
        if count < 0:
            raise ValidationError(f"negative read count for {sample_id!r} at {stage!r}")
        self._counts.setdefault(sample_id, {})[stage] = int(count)

    def record_many(self, stage: str, counts: Mapping[str, int]) -> None:
        for sample_id, count in counts.items():
            self.record(sample_id, stage, count)

    def count(self, sample_id: str, stage: str) -> Optional[int]:
        return self._counts.get(sample_id, {}).get(stage)

    @property
    def samples(self):
        return sorted(self._counts)

    def to_frame(self) -> pd.DataFrame:
        """Counts per stage plus ``<stage>_loss`` fractions against the reference stage.

        Samples missing a stage (for example after a failure) get NaN there.
        """
        frame = pd.DataFrame.from_dict(self._counts, orient="index")
        frame = frame.reindex(index=self.samples, columns=list(STAGES))
        frame.index.name = "sample_id"
        for stage, reference in REFERENCE_STAGE.items():
            ref = frame[reference].astype(float)
            with np.errstate(divide="ignore", invalid="ignore"):
                loss = 1.0 - frame[stage].astype(float) / ref
            frame[f"{stage}_loss"] = loss.where(ref > 0)
        return frame

    def warn_anomalies(self, thresholds: Mapping[str, float]) -> Dict[str, float]:
        """Log a warning for every stage whose median loss exceeds its threshold.

        Returns:
            Median loss of each flagged stage
        """
        if not self._counts:
            return {}
        frame = self.to_frame()
        flagged: Dict[str, float] = {}
        for stage, threshold in thresholds.items():
            column = f"{stage}_loss"
            if column not in frame:
                continue
            median = frame[column].median(skipna=True)
            if pd.notna(median) and median > threshold:
                flagged[stage] = float(median)
                logger.warning(
                    f"Median read loss at stage '{stage}' is {median:.1%} "
                    f"(threshold {threshold:.1%})"
                )
        return flagged
