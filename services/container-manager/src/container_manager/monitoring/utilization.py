"""Resource utilization, computed on read from the latest sample of each metric."""

from collections import deque
from collections.abc import Mapping

from ..runtime import ResourceSample
from ..schemas import METRIC_UNITS, MetricSample, MetricType, ResourceUtilization


def samples_from(sample: ResourceSample) -> list[MetricSample]:
    """Split a runtime stats sample into one MetricSample per reported metric."""
    samples = []
    for metric_type in MetricType:
        value = getattr(sample, metric_type.value, None)
        if value is not None:
            samples.append(
                MetricSample(metric_type=metric_type, value=value, unit=METRIC_UNITS[metric_type])
            )
    return samples


def compute_utilization(
    windows: Mapping[MetricType, deque[MetricSample]],
) -> ResourceUtilization:
    latest: dict[str, float] = {}
    sampled_at = None
    for metric_type, window in windows.items():
        if not window:
            continue
        sample = window[-1]
        latest[metric_type.value] = sample.value
        if sampled_at is None or sample.collected_at > sampled_at:
            sampled_at = sample.collected_at
    return ResourceUtilization(**latest, sampled_at=sampled_at)
