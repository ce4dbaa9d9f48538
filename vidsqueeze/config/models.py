import sys
from enum import Enum
from typing import List, Optional, Tuple
from pydantic import BaseModel, Field, field_validator, model_validator


class VideoCodec(str, Enum):
    """Supported codec families; the value is the software encoder name."""

    H264 = "libx264"
    H265 = "libx265"

    @property
    def ffmpeg_value(self) -> str:
        return self.value

    @property
    def short_name(self) -> str:
        return "H.264" if self is VideoCodec.H264 else "H.265"

    @property
    def display_name(self) -> str:
        return "H.264 (recommended)" if self is VideoCodec.H264 else "H.265 (smaller files)"

    @property
    def description(self) -> str:
        if self is VideoCodec.H264:
            return "Best compatibility and fast encoding. Plays on virtually every device."
        return "Better compression, slower encoding. Not every device can play it."

    @property
    def recommended_quality_range(self) -> Tuple[int, int]:
        """Inclusive (low, high) CRF range."""
        # H.265 needs a slightly higher CRF for similar visual quality.
        return (18, 28) if self is VideoCodec.H264 else (20, 30)

    @property
    def default_quality(self) -> int:
        return 23 if self is VideoCodec.H264 else 25

    def hardware_encoder(self, platform: Optional[str] = None) -> Optional[str]:
        """Hardware encoder for this codec on the given platform."""
        platform = platform or sys.platform
        family = "h264" if self is VideoCodec.H264 else "hevc"
        if platform == "darwin":
            return f"{family}_videotoolbox"
        if platform.startswith(("linux", "win")):
            return f"{family}_nvenc"
        return None

    def hardware_quality_flag(self, platform: Optional[str] = None) -> str:
        platform = platform or sys.platform
        return "-q:v" if platform == "darwin" else "-cq"

    @classmethod
    def parse(cls, value: str) -> "VideoCodec":
        """Accepts 'h264', 'h265', 'hevc' or the encoder name."""
        aliases = {"h264": cls.H264, "x264": cls.H264, "h265": cls.H265, "hevc": cls.H265, "x265": cls.H265}
        key = value.strip().lower()
        if key in aliases:
            return aliases[key]
        return cls(key)


def clamp_quality(value: int, codec: VideoCodec) -> int:
    low, high = codec.recommended_quality_range
    return max(low, min(high, value))


class CompressionSettings(BaseModel):
    codec: VideoCodec = VideoCodec.H264
    crf: Optional[int] = None  # None -> codec default
    copy_audio: bool = True
    use_hardware_acceleration: bool = True
    delete_originals: bool = False
    preset: str = "medium"

    @field_validator("codec", mode="before")
    @classmethod
    def parse_codec(cls, v):
        if isinstance(v, str):
            return VideoCodec.parse(v)
        return v

    @model_validator(mode="after")
    def resolve_quality(self):
        if self.crf is None:
            self.crf = self.codec.default_quality
        else:
            self.crf = clamp_quality(self.crf, self.codec)
        return self

    def set_quality(self, crf: int):
        self.crf = clamp_quality(crf, self.codec)

    def set_codec(self, codec: VideoCodec):
        """Switches codec and pulls the current CRF into its range."""
        self.codec = codec
        self.crf = clamp_quality(self.crf, codec)

    @property
    def validation_errors(self) -> List[str]:
        low, high = self.codec.recommended_quality_range
        errors = []
        if not (low <= self.crf <= high):
            errors.append(
                f"CRF {self.crf} is outside the recommended range {low}-{high} for {self.codec.short_name}"
            )
        return errors

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors

    @property
    def audio_codec_parameters(self) -> List[str]:
        if self.copy_audio:
            return ["-c:a", "copy"]
        return ["-c:a", "aac", "-b:a", "128k"]

    @property
    def software_video_parameters(self) -> List[str]:
        return ["-c:v", self.codec.ffmpeg_value, "-crf", str(self.crf), "-preset", self.preset]


class QueueConfig(BaseModel):
    concurrency: int = Field(default=1, ge=1, le=8)
    max_retries: int = Field(default=0, ge=0, le=10)
    cancel_grace_period_s: float = Field(default=3.0, gt=0.0, le=60.0)


class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None
    extensions: List[str] = Field(
        default_factory=lambda: [".mp4", ".mov", ".mkv", ".avi", ".webm", ".m4v", ".flv", ".wmv", ".mpg", ".mpeg", ".3gp"]
    )
    min_size_bytes: int = Field(default=1, ge=1)
    output_suffix: str = "_compressed"
    recursive: bool = True
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]

    @field_validator("output_suffix")
    @classmethod
    def validate_suffix(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v:
            raise ValueError(f"Invalid output_suffix: {v!r}")
        return v


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    compression: CompressionSettings = Field(default_factory=CompressionSettings)
    queue: QueueConfig = Field(default_factory=QueueConfig)
