"""
Acceleration tiers shared by the decoder and the numeric backends.

A tier is tried by calling its probe, which reports success or failure as a
ProbeResult value. Callers walk an ordered list of probes and keep the first
one that succeeds, logging every failure along the way.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from LogoDetect.utils.log_setup import logger


class AccelerationTier(Enum):
    CUDA = "cuda"
    QSV = "qsv"
    SOFTWARE = "software"


@dataclass
class AccelerationUnavailable:
    """Why a tier could not be used"""
    tier: str
    reason: str

    def __str__(self):
        return f"{self.tier}: {self.reason}"


@dataclass
class ProbeResult:
    tier: str
    value: Any = None
    error: Optional[AccelerationUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, tier: str, value: Any) -> "ProbeResult":
        return cls(tier=tier, value=value)

    @classmethod
    def failure(cls, tier: str, reason: str) -> "ProbeResult":
        return cls(tier=tier, error=AccelerationUnavailable(tier, reason))


# Decoder names FFmpeg registers for each hardware tier, keyed by the
# FFmpeg codec name of the stream.
DECODER_VARIANTS: Dict[AccelerationTier, Dict[str, str]] = {
    AccelerationTier.CUDA: {
        'h264': 'h264_cuvid',
        'hevc': 'hevc_cuvid',
        'vp9': 'vp9_cuvid',
        'av1': 'av1_cuvid',
    },
    AccelerationTier.QSV: {
        'h264': 'h264_qsv',
        'hevc': 'hevc_qsv',
        'vp9': 'vp9_qsv',
        'av1': 'av1_qsv',
        'mpeg2video': 'mpeg2_qsv',
        'vc1': 'vc1_qsv',
    },
}


def decoder_variant(tier: AccelerationTier, codec_name: Optional[str]) -> Optional[str]:
    """Return the accelerated decoder for codec_name, or None for software/unknown"""
    if tier is AccelerationTier.SOFTWARE or not codec_name:
        return None
    return DECODER_VARIANTS.get(tier, {}).get(codec_name.lower())


def parse_tiers(names: Iterable[str]) -> Tuple[AccelerationTier, ...]:
    """
    Convert configured tier names into an ordered tuple, always ending in software.
    Unknown names are logged and ignored.
    """
    tiers = []
    for name in names:
        try:
            tier = AccelerationTier(str(name).lower())
        except ValueError:
            logger.warning(f"Ignoring unknown acceleration tier '{name}'")
            continue
        if tier not in tiers:
            tiers.append(tier)
    if AccelerationTier.SOFTWARE in tiers:
        tiers.remove(AccelerationTier.SOFTWARE)
    tiers.append(AccelerationTier.SOFTWARE)
    return tuple(tiers)


def first_available(probes: Iterable[Tuple[str, Callable[[], ProbeResult]]], what: str) -> ProbeResult:
    """
    Run probes in order and return the first successful result.

    If every probe fails the last failure is returned so the caller can decide
    whether that is fatal.
    """
    result = None
    for name, probe in probes:
        result = probe()
        if result.ok:
            logger.debug(f"{what}: using {name}")
            return result
        logger.debug(f"{what}: {result.error}")
    if result is None:
        return ProbeResult.failure("none", f"no {what} tiers configured")
    return result
