"""
Writers for the cut list outputs: segment CSV, EDL, and the diagnostic CSVs.
"""

import csv
from pathlib import Path
from typing import Iterable, Optional

from LogoDetect.utils.log_setup import logger

EDL_FRAME_RATE = 30


def _split_seconds(seconds: float):
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, remainder = divmod(total_ms, 3600 * 1000)
    minutes, remainder = divmod(remainder, 60 * 1000)
    secs, ms = divmod(remainder, 1000)
    return hours, minutes, secs, ms


def format_timestamp(seconds: float) -> str:
    """HH:MM:SS.mmm"""
    hours, minutes, secs, ms = _split_seconds(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"


def format_timecode(seconds: float, frame_rate: int = EDL_FRAME_RATE) -> str:
    """HH:MM:SS:FF, the frame count derived from the millisecond part"""
    hours, minutes, secs, ms = _split_seconds(seconds)
    frames = ms * frame_rate // 1000
    return f"{hours:02d}:{minutes:02d}:{secs:02d}:{frames:02d}"


def output_path_for(video_path, suffix: str, output_dir=None) -> Path:
    """
    Build an output path next to the video (or in output_dir) by replacing the
    video extension with suffix, e.g. '.segments.csv'.
    """
    video_path = Path(video_path)
    directory = Path(output_dir) if output_dir else video_path.parent
    return directory / f"{video_path.stem}{suffix}"


def _prepare(path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_segments_csv(segments: Iterable, path) -> Path:
    path = _prepare(path)
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        for segment in segments:
            writer.writerow([format_timestamp(segment.start), format_timestamp(segment.end)])
    logger.info(f"✓ Segments written to {path}")
    return path


def write_edl(segments: Iterable, path, description: str = "Logo Segment") -> Path:
    path = _prepare(path)
    with open(path, 'w') as f:
        for segment in segments:
            f.write(f"{format_timecode(segment.start)} {format_timecode(segment.end)} C {description}\n")
    logger.info(f"✓ EDL written to {path}")
    return path


def write_logo_detections_csv(detections: Iterable, path) -> Path:
    path = _prepare(path)
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['TimeSpan', 'LogoDiff'])
        for detection in sorted(detections, key=lambda d: d.time):
            writer.writerow([format_timestamp(detection.time), f"{detection.score:.6f}"])
    logger.debug(f"Logo detections written to {path}")
    return path


def write_scene_changes_csv(amounts: Iterable, path, events: Optional[Iterable] = None) -> Path:
    """
    Write the per-frame change amounts as 'scene' rows, plus a row for every
    black or white frame event.
    """
    rows = [(time, amount, 'scene') for time, amount in amounts]
    for event in events or []:
        if event.kind != 'scene':
            rows.append((event.time, event.magnitude, event.kind))
    rows.sort(key=lambda row: row[0])

    path = _prepare(path)
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['TimeSpan', 'ChangeAmount', 'Type'])
        for time, amount, kind in rows:
            writer.writerow([format_timestamp(time), f"{amount:.6f}", kind])
    logger.debug(f"Scene changes written to {path}")
    return path
