from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

Coordinate = Tuple[float, float]


class DefectType(str, Enum):
    TRANSVERSE = "transverse"
    LONGITUDINAL = "longitudinal"
    ALLIGATOR = "alligator"
    POTHOLE = "pothole"
    SEALED_CRACK = "sealed_crack"
    OTHER = "other"

    @classmethod
    def from_label(cls, label: Any) -> "DefectType":
        """Map loose class names ("Alligator Crack", "sealed", "D40") onto the enum"""
        if isinstance(label, DefectType):
            return label
        if not isinstance(label, str) or not label.strip():
            return cls.OTHER
        text = label.strip().lower().replace("-", "_").replace(" ", "_")
        if "sealed" in text:
            return cls.SEALED_CRACK
        for member in (cls.TRANSVERSE, cls.LONGITUDINAL, cls.ALLIGATOR, cls.POTHOLE):
            if member.value in text:
                return member
        return cls.OTHER


class SeverityLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class GpsFrame(BaseModel):
    frame_id: int
    timestamp: float = Field(..., description="Capture time in seconds")
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    speed_mph: Optional[float] = Field(None, description="Speed over the previous frame; None for the first frame")

    @property
    def coordinate(self) -> Coordinate:
        return (self.longitude, self.latitude)


class PixelPercentages(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transverse: float = 0.0
    alligator: float = 0.0
    pothole: float = 0.0
    sealed_crack: float = 0.0
    longitudinal: float = 0.0
    total: Optional[float] = None


class DeductBreakdown(BaseModel):
    transverse: float = 0.0
    longitudinal: float = 0.0
    alligator: float = 0.0
    pothole: float = 0.0


class DamageMetrics(BaseModel):
    total_damage_length_ft: float = 0.0
    damage_percentage: float = 0.0
    defect_count_by_type: Dict[str, int] = Field(default_factory=dict)
    severity_distribution: Dict[str, Dict[str, int]] = Field(default_factory=dict)


class PCIResult(BaseModel):
    pci_score: float = Field(..., ge=0, le=100, description="0-100, one decimal")
    pci_rating: str
    total_deduct_value: float
    deduct_breakdown: DeductBreakdown = Field(default_factory=DeductBreakdown)
    damage_metrics: DamageMetrics = Field(default_factory=DamageMetrics)


class CorrectionIteration(BaseModel):
    q: int
    total_deduct_value: float
    corrected_deduct_value: float
    deduct_values: List[float]


class CorrectionTrace(BaseModel):
    iterations: List[CorrectionIteration] = Field(default_factory=list)
    max_cdv: float = 0.0
    corrected_directly: bool = Field(False, description="True when at most one deduct exceeded 2.0 and no correction ran")
    terminated_early: bool = False


class ChildTrack(BaseModel):
    track_id: Any = None
    parent_track_id: Any = None
    job_id: Optional[str] = None
    coordinates: List[Coordinate] = Field(default_factory=list)
    defects: List[Dict[str, Any]] = Field(default_factory=list)
    frame_ids: List[int] = Field(default_factory=list)
    measured_real_length: Optional[float] = Field(None, description="Physical crack length in meters")
    measured_length_feet: Optional[float] = None
    track_length_feet: float = 0.0
    track_damage: int = 0
    defect_types: List[str] = Field(default_factory=list)
    severity_labels: List[str] = Field(default_factory=list)
    representative_thumbnail: Optional[str] = None
    track_start_ts: Optional[float] = None
    source_geojson_url: Optional[str] = None


class ParentTrack(BaseModel):
    parent_track_id: Any = None
    job_id: Optional[str] = None
    frame_range: Optional[Tuple[int, int]] = None
    child_track_keys: List[str] = Field(default_factory=list)
    source_url: Optional[str] = None


class TrackSummary(BaseModel):
    track_id: Any = None
    parent_track_id: Any = None
    start_feet: float = 0.0
    end_feet: float = 0.0
    thumbnail_url: Optional[str] = None
    track_damage: int = 0
    defect_types: List[str] = Field(default_factory=list)
    severity_labels: List[str] = Field(default_factory=list)
    measured_length_feet: Optional[float] = None
    job_id: Optional[str] = None
    source_geojson_url: Optional[str] = None


class VideoSegment(BaseModel):
    model_config = ConfigDict(extra="allow")

    segment_id: Any = None
    frame_range: Optional[List[int]] = None
    hls: Optional[Dict[str, Any]] = None
    gps_start: Optional[Any] = None
    gps_end: Optional[Any] = None
    pixel_percentage_with_projections: Optional[Dict[str, Any]] = None

    @property
    def master_playlist_url(self) -> Optional[str]:
        return (self.hls or {}).get("master_playlist_url")


class VideoSegmentIndex(BaseModel):
    model_config = ConfigDict(extra="allow")

    job_id: Optional[str] = None
    segments: List[VideoSegment] = Field(default_factory=list)
    total_distance_ft: Optional[float] = None


class RoadSegment(BaseModel):
    job_id: Optional[str] = None
    segment_index: int = Field(..., ge=0, description="0-based distance bin along the job's path")
    segment_id: int = Field(..., ge=1, description="1-indexed id, matches video segment ids")
    start_feet: float = 0.0
    end_feet: float = 0.0
    segment_length_feet: float = 0.0
    coordinates: List[Coordinate] = Field(default_factory=list)
    start_coord: Optional[Coordinate] = None
    end_coord: Optional[Coordinate] = None
    damage_count: int = 0
    track_ids: List[Any] = Field(default_factory=list)
    defect_types: List[str] = Field(default_factory=list)
    overlapping_tracks: List[TrackSummary] = Field(default_factory=list)
    job_ids: List[str] = Field(default_factory=list)
    pixel_percentages: Optional[PixelPercentages] = None
    video_segment: Optional[Dict[str, Any]] = None
    pci: Optional[PCIResult] = None
    astm_pci: Optional[PCIResult] = None

    def to_feature(self) -> Dict[str, Any]:
        """LineString feature in the shape the map layer consumes"""
        coords = [list(c) for c in self.coordinates]
        if len(coords) == 1:
            coords = coords * 2
        pci = self.pci
        return {
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": coords},
            "properties": {
                "job_id": self.job_id,
                "segment_id": self.segment_id,
                "segment_index": self.segment_index,
                "damage_count": self.damage_count,
                "track_ids": list(self.track_ids),
                "start_feet": self.start_feet,
                "end_feet": self.end_feet,
                "segment_length_feet": self.segment_length_feet,
                "defect_types": list(self.defect_types),
                "overlapping_tracks": [t.model_dump() for t in self.overlapping_tracks],
                "start_coord": list(self.start_coord) if self.start_coord else None,
                "end_coord": list(self.end_coord) if self.end_coord else None,
                "job_ids": list(self.job_ids),
                "pci_score": pci.pci_score if pci else None,
                "pci_rating": pci.pci_rating if pci else None,
                "pci_details": pci.model_dump() if pci else None,
                "astm_pci_details": self.astm_pci.model_dump() if self.astm_pci else None,
                "pixel_percentages": self.pixel_percentages.model_dump() if self.pixel_percentages else None,
                "video_segment": self.video_segment,
            },
        }


class PercentileThresholds(BaseModel):
    p50: float = 0.0
    p70: float = 0.0
    p85: float = 0.0


class DensitySegment(BaseModel):
    coordinates: List[Coordinate]
    detections_in_segment: int = 0
    crack_density: float = 0.0
    actual_length_feet: float = 0.0
    density_class: str = "low"
    density_color: str = "#00FF00"

    def to_feature(self) -> Dict[str, Any]:
        return {
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": [list(c) for c in self.coordinates]},
            "properties": {
                "detections_in_segment": self.detections_in_segment,
                "crack_density": self.crack_density,
                "actual_length_feet": self.actual_length_feet,
                "density_class": self.density_class,
                "density_color": self.density_color,
            },
        }


class PathDensityResult(BaseModel):
    segments: List[DensitySegment] = Field(default_factory=list)
    min_density: float = 0.0
    max_density: float = 0.0
    percentile_thresholds: PercentileThresholds = Field(default_factory=PercentileThresholds)
    path_count: int = 0
