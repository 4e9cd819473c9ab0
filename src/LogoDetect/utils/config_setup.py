from dataclasses import dataclass, field
from typing import List, Optional

# Thresholds used to turn per-sample scores into segments
@dataclass
class DetectionConfig:
    logo_threshold: float = 1.0
    scene_change_threshold: float = 0.2
    blank_threshold: float = 0.1
    min_duration: float = 60.0
    max_frames: Optional[int] = None
    force_reload: bool = False

# Logo reference sampling and bounding box discovery
@dataclass
class ReferenceConfig:
    sample_count: int = 500
    start_fraction: float = 0.1
    end_fraction: float = 0.7
    threshold_fraction: float = 0.2
    max_retries: int = 2
    padding: int = 10

@dataclass
class MatcherConfig:
    window_seconds: float = 30.0
    sample_interval: float = 1.0
    prefill_blank: bool = True

# Decoder configuration
@dataclass
class DecodingConfig:
    acceleration_tiers: List[str] = field(default_factory=lambda: ["cuda", "qsv", "software"])
    keyframes_only: bool = False
    prefetch: bool = True
    numeric_backend: Optional[str] = None

@dataclass
class SnappingConfig:
    snap_to_scene_changes: bool = True
    chunk_seconds: float = 10.0

# Output configuration
@dataclass
class OutputsConfig:
    segments_csv: bool = True
    edl: bool = True
    debug_csv: bool = False
    edl_description: str = "Logo Segment"

@dataclass
class DetectConfig:
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    decoding: DecodingConfig = field(default_factory=DecodingConfig)
    snapping: SnappingConfig = field(default_factory=SnappingConfig)
    outputs: OutputsConfig = field(default_factory=OutputsConfig)
