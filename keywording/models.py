"""
Data model for the keywording pipeline
"""
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Tuple, Dict, Any

CATEGORIES: Tuple[str, ...] = (
    "Animal",
    "Buildings and Architecture",
    "Business",
    "Drinks",
    "The Environment",
    "States of Mind",
    "Food",
    "Graphic Resources",
    "Hobbies and Leisure",
    "Industry",
    "Landscape",
    "Lifestyle",
    "People",
    "Plants and Flowers",
    "Culture and Religion",
    "Science",
    "Social Issues",
    "Sports",
    "Technology",
    "Transport",
    "Travel",
)

# Outcome kinds passed to ResultAggregator.record
OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_MISSING = "missing"
OUTCOME_CANCELLED = "cancelled"


@dataclass(frozen=True)
class InputItem:
    """One pre-processed image, addressed by its position in the submission"""
    index: int
    encoded_payload: str
    payload_kind: str
    display_name: str

    @property
    def data_url(self) -> str:
        return f"data:{self.payload_kind};base64,{self.encoded_payload}"

    @classmethod
    def from_dict(cls, index: int, data: Dict[str, Any]) -> "InputItem":
        """Build from the upload shape {fileName, mimeType, base64Data}"""
        payload = data.get('base64Data') or data.get('encoded_payload')
        kind = data.get('mimeType') or data.get('payload_kind')
        name = data.get('fileName') or data.get(
            'display_name') or f"image-{index}"
        if not payload:
            raise ValueError(f"Image {name} is missing base64Data")
        if not kind:
            raise ValueError(f"Image {name} is missing mimeType")
        return cls(index=index, encoded_payload=payload,
                   payload_kind=kind, display_name=name)


@dataclass(frozen=True)
class Chunk:
    """Contiguous slice of the input sent in one service call"""
    chunk_number: int
    base_index: int
    items: Tuple[InputItem, ...]

    def __len__(self) -> int:
        return len(self.items)

    def global_index(self, offset: int) -> int:
        return self.base_index + offset


@dataclass(frozen=True)
class Metadata:
    """Validated metadata for a single image"""
    title: str
    description: str
    keywords: Tuple[str, ...]
    category: str
    display_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file_name': self.display_name,
            'title': self.title,
            'description': self.description,
            'keywords': list(self.keywords),
            'category': self.category,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Metadata":
        keywords = data.get('keywords') or ()
        # exported spreadsheets often carry keywords as one comma-separated cell
        if isinstance(keywords, str):
            keywords = keywords.split(',')
        return cls(
            title=data.get('title', ''),
            description=data.get('description', ''),
            keywords=tuple(k.strip() for k in keywords
                           if isinstance(k, str) and k.strip()),
            category=data.get('category', ''),
            display_name=data.get('file_name') or data.get('fileName') or '',
        )


@dataclass(frozen=True)
class AnalyzedItem:
    """A validated response entry and its position within the chunk"""
    offset: int
    metadata: Metadata


@dataclass
class BatchStat:
    """Diagnostics for one chunk attempt or one fallback sub-run"""
    chunk_number: int
    item_count: int
    success_count: int = 0
    failure_count: int = 0
    elapsed_ms: float = 0.0
    kind: str = "chunk"
    error: Optional[str] = None


@dataclass
class GlobalStats:
    total_items: int = 0
    success_count: int = 0
    failure_count: int = 0
    elapsed_ms: float = 0.0
    per_batch: List[BatchStat] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return self.success_count + self.failure_count

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProgressInfo:
    """Snapshot handed to progress callbacks"""
    total_images: int
    processed_images: int
    successful_images: int
    failed_images: int
    processing_time_ms: float
    status: str
    current_batch: Optional[int] = None
    total_batches: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineResult:
    success: bool
    metadata: List[Metadata] = field(default_factory=list)
    stats: GlobalStats = field(default_factory=GlobalStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'metadata': [m.to_dict() for m in self.metadata],
            'stats': self.stats.to_dict(),
        }
