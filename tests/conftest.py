"""
Pytest configuration file.
Adds the project root to Python path so 'keywording' can be imported.
"""
import sys
import os
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Set environment variables for testing before any keywording imports
os.environ.setdefault('OPENROUTER_API_KEY', 'test_key')
os.environ.setdefault('CHUNK_SIZE', '20')
os.environ.setdefault('MAX_CONCURRENT_CHUNKS', '5')
os.environ.setdefault('INDIVIDUAL_FALLBACK_CONCURRENCY', '3')
os.environ.setdefault('LOG_DIR', '/tmp/keywording-test-logs')

import asyncio
import pytest

from keywording.config import PipelineConfig
from keywording.models import AnalyzedItem, InputItem, Metadata


def make_keywords(count=45, prefix="kw"):
    return [f"{prefix}{i}" for i in range(count)]


def make_metadata(name="image.jpg", keyword_count=45):
    return Metadata(
        title=f"Title for {name}",
        description=f"Description of {name}.",
        keywords=tuple(make_keywords(keyword_count)),
        category="Landscape",
        display_name=name,
    )


def make_items(count):
    return [
        InputItem(index=i, encoded_payload=f"payload{i}",
                  payload_kind="image/jpeg", display_name=f"img{i}.jpg")
        for i in range(count)
    ]


def raw_entry(title="Sunset", keyword_count=45, category="Landscape"):
    return {
        "title": title,
        "description": "A calm sunset over the sea.",
        "keywords": make_keywords(keyword_count),
        "category": category,
    }


def payloads_in(content):
    """Base64 payloads of the image parts in a request, in order"""
    return [part['image_url']['url'].split(',', 1)[1]
            for part in content if part.get('type') == 'image_url']


class FakeClient:
    """Stand-in for AnalysisClient that records concurrency and calls"""

    def __init__(self, behavior=None, available=True, delay=0.001):
        self.behavior = behavior
        self.available = available
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.singles_in_flight = 0
        self.max_singles_in_flight = 0

    async def check_availability(self):
        return self.available

    async def analyze_chunk(self, chunk):
        self.calls.append(chunk)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        single = len(chunk) == 1
        if single:
            self.singles_in_flight += 1
            self.max_singles_in_flight = max(
                self.max_singles_in_flight, self.singles_in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.behavior is not None:
                return self.behavior(chunk)
            return [AnalyzedItem(offset=j, metadata=make_metadata(item.display_name))
                    for j, item in enumerate(chunk.items)]
        finally:
            self.in_flight -= 1
            if single:
                self.singles_in_flight -= 1


class RecordingSleep:
    """Async sleep replacement that records requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        openrouter_api_key='test_key',
        api_backend='http',
        chunk_size=20,
        max_concurrent_chunks=5,
        individual_fallback_concurrency=3,
        retry_attempts=3,
    )


@pytest.fixture
def fake_sleep():
    return RecordingSleep()

