"""Configuration: correlation coefficients, image manifest and cache tuning.

Coefficients and manifests are external JSON documents loaded once before
the first interaction. Both loaders validate exhaustively and report every
problem in a single ``ConfigError`` instead of failing on the first one, so
an incomplete configuration is rejected at load time rather than on a click.

Example coefficient document
----------------------------
{
  "shoulder_correlations": {
    "coefficients": {
      "axial_to_sagittal": {"a": -11.68, "b": 19.22, "c": -4.08},
      "axial_to_coronal": {"a": -25.50, "b": -13.81, "c": -30.49}
    }
  }
}

Example manifest
----------------
{"mri_images": {"axial": ["https://host/ax_00.png", ...], "sagittal": [...], "coronal": [...]}}
"""

from __future__ import annotations

import json
import math
import random
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

from ortho_viewer.errors import ConfigError
from ortho_viewer.views import ALL_VIEWS, View, ViewPair, ordered_pairs

__all__ = [
    "CoefficientEntry",
    "CoefficientTable",
    "ImageManifest",
    "RetryPolicy",
    "CacheConfig",
    "AppConfig",
    "DEFAULT_CONFIG",
    "load_coefficients",
    "load_manifest",
]

JsonSource = Union[str, Path, Mapping[str, Any]]

_URL_SCHEMES = ("http", "https", "file")


@dataclass(frozen=True)
class CoefficientEntry:
    """Affine coefficients mapping a normalized click to a target slice."""

    a: float
    b: float
    c: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CoefficientEntry":
        """Build an entry from ``{"a": .., "b": .., "c": ..}``.

        Raises
        ------
        ValueError
            If a coefficient is missing, not numeric, or not finite.
        """
        values = []
        for name in ("a", "b", "c"):
            if name not in data:
                raise ValueError(f"missing coefficient '{name}'")
            raw = data[name]
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raise ValueError(f"coefficient '{name}' is not a number: {raw!r}")
            value = float(raw)
            if not math.isfinite(value):
                raise ValueError(f"coefficient '{name}' is not finite: {raw!r}")
            values.append(value)
        return cls(*values)


class CoefficientTable:
    """Immutable mapping from an ordered view pair to its coefficients."""

    def __init__(self, entries: Mapping[ViewPair, CoefficientEntry]) -> None:
        for source, target in entries:
            if source is target:
                raise ConfigError(f"Self pair {source.value}_to_{target.value} is not allowed")
        self._entries: Mapping[ViewPair, CoefficientEntry] = MappingProxyType(dict(entries))

    def entry(self, source: View, target: View) -> CoefficientEntry:
        """Return the coefficients for ``source -> target``.

        Raises
        ------
        ConfigError
            If the table has no entry for the pair.
        """
        try:
            return self._entries[(source, target)]
        except KeyError:
            raise ConfigError(
                f"No correlation coefficients for {source.value}_to_{target.value}"
            ) from None

    def missing_pairs(self, views: Sequence[View] = ALL_VIEWS) -> List[ViewPair]:
        """Return ordered pairs over ``views`` that have no entry."""
        return [pair for pair in ordered_pairs(views) if pair not in self._entries]

    def validate(self, views: Sequence[View] = ALL_VIEWS) -> None:
        """Check that every ordered pair of distinct views has an entry."""
        missing = self.missing_pairs(views)
        if missing:
            raise ConfigError(
                "Incomplete correlation table",
                [f"missing {s.value}_to_{t.value}" for s, t in missing],
            )

    def __contains__(self, pair: object) -> bool:
        return pair in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ViewPair]:
        return iter(self._entries)


class ImageManifest:
    """Ordered source URLs per view, one per slice index."""

    def __init__(self, urls: Mapping[View, Sequence[str]]) -> None:
        self._urls: Dict[View, Tuple[str, ...]] = {view: tuple(items) for view, items in urls.items()}

    @property
    def views(self) -> Tuple[View, ...]:
        return tuple(self._urls)

    def url(self, view: View, slice_index: int) -> str:
        """Return the URL of ``slice_index`` in ``view``.

        Raises
        ------
        IndexError
            If the slice index is outside the view's stack.
        """
        urls = self._urls[view]
        if slice_index < 0 or slice_index >= len(urls):
            raise IndexError(f"{view.value} slice {slice_index} outside 0..{len(urls) - 1}")
        return urls[slice_index]

    def urls(self, view: View) -> Tuple[str, ...]:
        return self._urls[view]

    def slice_count(self, view: View) -> int:
        return len(self._urls[view])

    def slice_counts(self) -> Dict[View, int]:
        return {view: len(items) for view, items in self._urls.items()}

    def items(self) -> Iterator[Tuple[View, int, str]]:
        """Yield ``(view, slice_index, url)`` for every slice of every view."""
        for view, urls in self._urls.items():
            for index, url in enumerate(urls):
                yield view, index, url

    def validate(self, views: Sequence[View] = ALL_VIEWS) -> None:
        """Check that every view has a non-empty list of usable URLs."""
        problems: List[str] = []
        for view in views:
            urls = self._urls.get(view)
            if urls is None:
                problems.append(f"missing view '{view.value}'")
                continue
            if not urls:
                problems.append(f"view '{view.value}' has no slices")
            for index, url in enumerate(urls):
                if not _is_usable_url(url):
                    problems.append(f"{view.value}[{index}] is not a usable URL: {url!r}")
        if problems:
            raise ConfigError("Invalid image manifest", problems)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule for a single asset load.

    Notes
    -----
    - Total attempts are ``1 + retries``.
    - Attempt timeouts shrink on later attempts; the last value is reused when
      there are more attempts than timeouts.
    - Backoff after ``attempts_used`` failures is
      ``min(2 ** attempts_used * base_delay + U(0, jitter), max_delay)``.
    """

    retries: int = 2
    attempt_timeouts: Tuple[float, ...] = (15.0, 10.0, 5.0)
    base_delay: float = 1.0
    jitter: float = 1.0
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        problems = []
        if self.retries < 0:
            problems.append("retries must be >= 0")
        if not self.attempt_timeouts:
            problems.append("attempt_timeouts must not be empty")
        elif any(t <= 0 for t in self.attempt_timeouts):
            problems.append("attempt_timeouts must be positive")
        if self.base_delay < 0 or self.jitter < 0 or self.max_delay < 0:
            problems.append("delays must be >= 0")
        if problems:
            raise ConfigError("Invalid retry policy", problems)

    @property
    def attempts(self) -> int:
        return 1 + self.retries

    def timeout_for(self, attempt: int) -> float:
        """Return the timeout in seconds for the 1-based ``attempt``."""
        index = min(max(attempt, 1), len(self.attempt_timeouts)) - 1
        return float(self.attempt_timeouts[index])

    def backoff_delay(self, attempts_used: int, rng: Optional[random.Random] = None) -> float:
        """Return the pause in seconds before the next attempt."""
        jitter = (rng or random).uniform(0.0, self.jitter) if self.jitter > 0 else 0.0
        return min((2 ** attempts_used) * self.base_delay + jitter, self.max_delay)


@dataclass(frozen=True)
class CacheConfig:
    """Tuning for the asset cache and its prefetcher.

    ``batch_pauses`` holds ``(failure_ratio_threshold, pause_seconds)`` tiers,
    checked in order; ``base_batch_pause`` applies when no tier matches.
    ``priority_radius`` is the number of neighbours on each side of the center
    slice that are prefetched before everything else.
    """

    max_concurrent: int = 3
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    batch_pauses: Tuple[Tuple[float, float], ...] = ((0.3, 0.5), (0.1, 0.2))
    base_batch_pause: float = 0.1
    restart_pause: float = 1.0
    priority_radius: int = 2

    def __post_init__(self) -> None:
        problems = []
        if self.max_concurrent < 1:
            problems.append("max_concurrent must be >= 1")
        if self.priority_radius < 0:
            problems.append("priority_radius must be >= 0")
        if self.base_batch_pause < 0 or self.restart_pause < 0:
            problems.append("pauses must be >= 0")
        if any(pause < 0 for _, pause in self.batch_pauses):
            problems.append("batch pauses must be >= 0")
        if problems:
            raise ConfigError("Invalid cache config", problems)

    def batch_pause(self, failure_ratio: float) -> float:
        """Return the inter-batch pause for a phase's failure ratio."""
        for threshold, pause in self.batch_pauses:
            if failure_ratio > threshold:
                return pause
        return self.base_batch_pause


@dataclass(frozen=True)
class AppConfig:
    """Session-level settings.

    Attributes
    ----------
    cache : CacheConfig
        Asset cache tuning.
    region : str
        Anatomical region prefix used to find coefficients in the JSON
        (``"<region>_correlations"``).
    side : {"right", "left"}
        Imaged side; ``"left"`` mirrors x for ``mirrored_targets``.
    mirrored_targets : tuple of View
        Target views whose x coordinate is mirrored on the left side.
    start_slices : mapping, optional
        Initial slice per view; defaults to the center slice.
    """

    cache: CacheConfig = field(default_factory=CacheConfig)
    region: str = "shoulder"
    side: str = "right"
    mirrored_targets: Tuple[View, ...] = (View.SAGITTAL, View.CORONAL)
    start_slices: Optional[Mapping[View, int]] = None

    def __post_init__(self) -> None:
        problems = []
        if self.side not in ("right", "left"):
            problems.append(f"side must be 'right' or 'left', got {self.side!r}")
        if problems:
            raise ConfigError("Invalid app config", problems)


DEFAULT_CONFIG = AppConfig()


def load_coefficients(
    source: JsonSource,
    views: Sequence[View] = ALL_VIEWS,
    region: str = "shoulder",
) -> CoefficientTable:
    """Load and validate the correlation coefficient table.

    Parameters
    ----------
    source : str, pathlib.Path or mapping
        JSON file path or an already parsed document.
    views : sequence of View
        Views that must be fully connected by the table.
    region : str
        Region prefix for the nested ``"<region>_correlations"`` layout.

    Returns
    -------
    CoefficientTable
        Table with an entry for every ordered pair of distinct ``views``.

    Raises
    ------
    ConfigError
        If the document is unreadable or any pair is missing or malformed.
    """
    data = _read_json(source, "coefficients")
    block: Any = data
    nested = data.get(f"{region}_correlations")
    if isinstance(nested, Mapping):
        block = nested.get("coefficients", nested)
    elif isinstance(data.get("coefficients"), Mapping):
        block = data["coefficients"]
    if not isinstance(block, Mapping):
        raise ConfigError("Coefficient document has no coefficient mapping")

    problems: List[str] = []
    entries: Dict[ViewPair, CoefficientEntry] = {}
    for key, value in block.items():
        pair = _parse_pair_key(str(key), problems)
        if pair is None:
            continue
        if not isinstance(value, Mapping):
            problems.append(f"{key}: expected an object with a, b, c")
            continue
        try:
            entries[pair] = CoefficientEntry.from_mapping(value)
        except ValueError as exc:
            problems.append(f"{key}: {exc}")
    for source_view, target_view in ordered_pairs(views):
        if (source_view, target_view) not in entries:
            problems.append(f"missing {source_view.value}_to_{target_view.value}")
    if problems:
        raise ConfigError("Invalid correlation table", problems)
    return CoefficientTable(entries)


def load_manifest(source: JsonSource, views: Sequence[View] = ALL_VIEWS) -> ImageManifest:
    """Load and validate the per-view image URL manifest.

    Accepts ``{"mri_images": {view: [...]}}``, ``{view: [...]}`` and the
    legacy ``{"vp1": [{"image": url}, ...]}`` layouts.

    Raises
    ------
    ConfigError
        If the document is unreadable, a view is missing or empty, or an
        entry is not a usable URL.
    """
    data = _read_json(source, "manifest")
    block = data.get("mri_images", data)
    if not isinstance(block, Mapping):
        raise ConfigError("Manifest has no image mapping")

    problems: List[str] = []
    urls: Dict[View, List[str]] = {}
    for key, items in block.items():
        try:
            view = View.parse(key)
        except ValueError:
            continue
        if not isinstance(items, list):
            problems.append(f"view '{view.value}' is not a list")
            continue
        resolved: List[str] = []
        for index, item in enumerate(items):
            url = item.get("image") if isinstance(item, Mapping) else item
            if not isinstance(url, str):
                problems.append(f"{view.value}[{index}] has no image URL")
                url = ""
            resolved.append(url)
        urls[view] = resolved
    manifest = ImageManifest(urls)
    try:
        manifest.validate(views)
    except ConfigError as exc:
        problems.extend(exc.problems)
    if problems:
        raise ConfigError("Invalid image manifest", problems)
    return ImageManifest({view: urls[view] for view in views})


def _read_json(source: JsonSource, what: str) -> Mapping[str, Any]:
    if isinstance(source, Mapping):
        return source
    path = Path(source)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read {what} from {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"{what.capitalize()} document must be a JSON object: {path}")
    return data


def _parse_pair_key(key: str, problems: List[str]) -> Optional[ViewPair]:
    source_name, sep, target_name = key.partition("_to_")
    if not sep:
        problems.append(f"{key}: expected '<source>_to_<target>'")
        return None
    try:
        source, target = View.parse(source_name), View.parse(target_name)
    except ValueError:
        problems.append(f"{key}: unknown view name")
        return None
    if source is target:
        problems.append(f"{key}: source and target must differ")
        return None
    return source, target


def _is_usable_url(url: str) -> bool:
    if not isinstance(url, str) or not url.strip():
        return False
    parsed = urlparse(url)
    if parsed.scheme not in _URL_SCHEMES:
        return False
    return bool(parsed.netloc or parsed.scheme == "file")
