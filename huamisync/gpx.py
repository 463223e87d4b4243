from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Iterable

import gpxpy.gpx

from .const import GPX_CREATOR, GPX_TRACK_NAME, GPXTPX_NAMESPACE
from .stats import ActivitySummary
from .telemetry import TrackPoint


def _hr_extension(bpm: int) -> ET.Element:
    ext = ET.Element(f"{{{GPXTPX_NAMESPACE}}}TrackPointExtension")
    hr = ET.SubElement(ext, f"{{{GPXTPX_NAMESPACE}}}hr")
    hr.text = str(bpm)
    return ext


def build_gpx(points: Iterable[TrackPoint], name: str = GPX_TRACK_NAME) -> gpxpy.gpx.GPX:
    """One track, one segment; heart-rate-only points are left out."""
    gpx = gpxpy.gpx.GPX()
    gpx.creator = GPX_CREATOR
    gpx.nsmap["gpxtpx"] = GPXTPX_NAMESPACE

    track = gpxpy.gpx.GPXTrack(name=name)
    segment = gpxpy.gpx.GPXTrackSegment()
    track.segments.append(segment)
    gpx.tracks.append(track)

    for p in points:
        if not p.has_valid_position:
            continue
        trkpt = gpxpy.gpx.GPXTrackPoint(
            latitude=round(p.latitude, 6),
            longitude=round(p.longitude, 6),
            time=p.timestamp,
        )
        if p.heart_rate:
            trkpt.extensions.append(_hr_extension(p.heart_rate))
        segment.points.append(trkpt)

    return gpx


def to_gpx(points: Iterable[TrackPoint], name: str = GPX_TRACK_NAME) -> str:
    return build_gpx(points, name).to_xml(version="1.1")


def export_summary(summary: ActivitySummary, name: str = GPX_TRACK_NAME) -> dict:
    """Summary values plus the GPX document, or None for untrusted layouts."""
    return {
        **summary.as_dict(),
        "gpx": to_gpx(summary.points, name) if summary.is_real_data else None,
    }
