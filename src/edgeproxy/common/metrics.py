"""Process-local metrics rendered in the Prometheus text format.

Every worker keeps its own registry; scraping one worker's metrics endpoint
shows that worker's counts only.
"""

from __future__ import annotations

from typing import Callable, Dict


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description

    def samples(self) -> list[str]:
        raise NotImplementedError

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        lines.extend(self.samples())
        return "\n".join(lines) + "\n"


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        self._value += amount

    def samples(self) -> list[str]:
        return [f"{self.name} {self._value}"]


class LabeledCounter(_Metric):
    """Counter split by the value of a single label, e.g. response status."""

    kind = "counter"

    def __init__(self, name: str, label: str, description: str = "") -> None:
        super().__init__(name, description)
        self.label = label
        self._values: Dict[str, float] = {}

    def inc(self, label_value: object, amount: float = 1.0) -> None:
        key = str(label_value)
        self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, label_value: object) -> float:
        return self._values.get(str(label_value), 0.0)

    def samples(self) -> list[str]:
        return [f'{self.name}{{{self.label}="{key}"}} {value}' for key, value in sorted(self._values.items())]


class Gauge(_Metric):
    kind = "gauge"

    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        super().__init__(name, description)
        self._value = 0.0
        self._supplier = supplier

    @property
    def value(self) -> float:
        return self._supplier() if self._supplier else self._value

    def set(self, value: float) -> None:
        self._value = value

    def samples(self) -> list[str]:
        return [f"{self.name} {self.value}"]


class Histogram(_Metric):
    kind = "histogram"

    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        super().__init__(name, description)
        self._buckets = sorted(buckets)
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bucket in enumerate(self._buckets):
            if value <= bucket:
                self._counts[index] += 1

    def samples(self) -> list[str]:
        lines = [f'{self.name}_bucket{{le="{bucket}"}} {count}' for bucket, count in zip(self._buckets, self._counts)]
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return lines


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, _Metric] = {}

    def register(self, metric):
        # Re-registering a name replaces the previous metric; each app instance
        # owns its own admission gauge.
        self._metrics[metric.name] = metric
        return metric

    def get(self, name: str):
        return self._metrics.get(name)

    def render(self) -> str:
        return "".join(metric.render() for metric in self._metrics.values())


GLOBAL_REGISTRY = MetricsRegistry()
