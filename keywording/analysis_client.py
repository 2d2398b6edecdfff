"""
Analysis client for the OpenRouter vision model.

Sends one chunk of images per request and turns the (often decorated)
completion text into validated Metadata records.

Features:
- aiohttp transport with connection pooling and per-request timeout
- OpenAI SDK transport against the same OpenAI-compatible API
- Tolerant payload extraction (fenced blocks, comments, trailing commas)
- Strict per-item validation; invalid items are dropped, never patched
"""
import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import openai
from openai import AsyncOpenAI

from .config import PipelineConfig, config as default_config
from .errors import (AnalysisServiceError, MalformedResponseError,
                     RateLimitError, TransientError, ValidationError)
from .models import CATEGORIES, AnalyzedItem, Chunk, Metadata
from .resilience import is_rate_limit_error

logger = logging.getLogger(__name__)

_CATEGORY_LOOKUP = {c.lower(): c for c in CATEGORIES}

# Keys under which some models nest the per-image list
_WRAPPER_KEYS = ('images', 'results', 'metadata', 'items', 'data')


def build_prompt(image_count: int, cfg: Optional[PipelineConfig] = None) -> str:
    """Fixed instruction sent ahead of the image parts"""
    cfg = cfg or default_config
    return f"""
        Analyze each of the {image_count} images below, in the order given, and return a JSON array
        with exactly {image_count} objects, one per image, in the same order:

        [
          {{
            "title": "A clear, descriptive title for the image",
            "description": "2-3 sentences describing the subject, context and notable elements",
            "keywords": ["between {cfg.target_keywords_min} and {cfg.target_keywords_max} specific, relevant keywords"],
            "category": "MUST be exactly one of: {', '.join(CATEGORIES)}"
          }}
        ]

        Output only the JSON array. No markdown, comments or explanations.
    """.strip()


def extract_json_payload(text: str) -> str:
    """Isolate the JSON payload from a possibly decorated response"""
    if not text or not text.strip():
        raise MalformedResponseError("Empty response text")

    # 1) fenced block (```json or ```)
    m = re.search(r"```(?:json)?\s*([\s\S]*?)```", text, re.IGNORECASE)
    if m and m.group(1).strip():
        return m.group(1).strip()

    # 2) first inline JSON array/object
    m = re.search(r"(\[[\s\S]*\]|\{[\s\S]*\})", text)
    if m:
        return m.group(1).strip()

    return text.strip()


def strip_json_decorations(text: str) -> str:
    """Remove // and /* */ comments and trailing commas outside strings"""
    out = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == '\\' and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith('//', i):
            end = text.find('\n', i)
            i = n if end == -1 else end
        elif text.startswith('/*', i):
            end = text.find('*/', i + 2)
            i = n if end == -1 else end + 2
        elif ch == ',':
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] in ']}':
                i += 1  # trailing comma
            else:
                out.append(ch)
                i += 1
        else:
            out.append(ch)
            i += 1
    return ''.join(out)


def decode_payload(text: str) -> List[Any]:
    """Decode the extracted payload into a list of raw item dicts"""
    payload = extract_json_payload(text)
    try:
        data = json.loads(payload)
    except ValueError:
        try:
            data = json.loads(strip_json_decorations(payload))
        except ValueError as e:
            raise MalformedResponseError(
                f"Failed to parse JSON response: {e}. Payload: {payload[:300]}") from e

    if isinstance(data, dict):
        for key in _WRAPPER_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
        return [data]
    if isinstance(data, list):
        return data
    raise MalformedResponseError(
        f"Unexpected JSON payload type: {type(data).__name__}")


def validate_metadata(raw: Any, display_name: str = "",
                      cfg: Optional[PipelineConfig] = None) -> Metadata:
    """Validate one decoded item and build a Metadata record"""
    cfg = cfg or default_config
    if not isinstance(raw, dict):
        raise ValidationError("Metadata is not an object")

    errors = []

    title = raw.get('title')
    if not isinstance(title, str) or not title.strip():
        errors.append('Missing title')

    description = raw.get('description')
    if not isinstance(description, str) or not description.strip():
        errors.append('Missing description')

    keywords = raw.get('keywords')
    cleaned: List[str] = []
    if isinstance(keywords, str):
        keywords = [k for k in keywords.split(',')]
    if not isinstance(keywords, list):
        errors.append('Keywords is not an array')
    else:
        seen = set()
        for k in keywords:
            if not isinstance(k, str) or not k.strip():
                continue
            k = k.strip()
            if k.lower() in seen:
                continue
            seen.add(k.lower())
            cleaned.append(k)
        if len(cleaned) < cfg.min_keywords:
            errors.append(
                f"Too few keywords ({len(cleaned)} < {cfg.min_keywords})")

    category = raw.get('category')
    canonical = _CATEGORY_LOOKUP.get(
        category.strip().lower()) if isinstance(category, str) else None
    if canonical is None:
        errors.append(f"Invalid category: {category!r}")

    if errors:
        raise ValidationError(', '.join(errors))

    if not (cfg.target_keywords_min <= len(cleaned) <= cfg.target_keywords_max):
        logger.debug("Keyword count %d for %s outside target range %d-%d",
                     len(cleaned), display_name or 'image',
                     cfg.target_keywords_min, cfg.target_keywords_max)

    return Metadata(
        title=title.strip(),
        description=description.strip(),
        keywords=tuple(cleaned),
        category=canonical,
        display_name=display_name,
    )


def parse_analysis_response(text: str, chunk: Chunk,
                            cfg: Optional[PipelineConfig] = None) -> List[AnalyzedItem]:
    """Parse a completion for ``chunk`` into validated items keyed by offset"""
    entries = decode_payload(text)

    if len(entries) != len(chunk):
        logger.warning(
            "Chunk %d: mismatch between input images (%d) and response items (%d)",
            chunk.chunk_number, len(chunk), len(entries))

    analyzed = []
    for offset, raw in enumerate(entries):
        if offset >= len(chunk):
            break
        item = chunk.items[offset]
        try:
            metadata = validate_metadata(raw, item.display_name, cfg)
        except ValidationError as e:
            logger.warning("Invalid metadata for %s (index %d): %s",
                           item.display_name, item.index, e)
            continue
        analyzed.append(AnalyzedItem(offset=offset, metadata=metadata))

    if not analyzed:
        raise MalformedResponseError(
            f"No usable metadata in response for chunk {chunk.chunk_number} "
            f"({len(entries)} items decoded)")
    return analyzed


def _get_field(obj, key):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def extract_completion_text(completion: Any) -> str:
    """Pull the assistant text out of a chat-completions response"""
    choices = _get_field(completion, 'choices')
    if choices:
        first = choices[0]
        content = _get_field(_get_field(first, 'message'), 'content')
        if isinstance(content, str) and content.strip():
            return content

        # multimodal models sometimes return a list of blocks
        if isinstance(content, list):
            parts = []
            for block in content:
                t = _get_field(block, 'text') if not isinstance(
                    block, str) else block
                if isinstance(t, str) and t.strip():
                    parts.append(t.strip())
            if parts:
                return '\n'.join(parts)

        text_field = _get_field(first, 'text')
        if isinstance(text_field, str) and text_field.strip():
            return text_field

    raise MalformedResponseError(
        'Invalid response structure: Missing content in API response')


def _status_error(status: int, message: str) -> Exception:
    """Map a non-200 HTTP status to the pipeline's error taxonomy"""
    text = f"API Error ({status}): {message[:500]}"
    if status == 429:
        return RateLimitError(text, status=status)
    if status == 408 or status >= 500:
        return TransientError(text, status=status)
    err = AnalysisServiceError(text, status=status)
    if is_rate_limit_error(err):
        return RateLimitError(text, status=status)
    return err


class AnalysisClient:
    """
    Client for chunked image analysis; one request per chunk.

    The HTTP backend opens its own aiohttp session on first use when none was
    passed in. Whoever creates the client closes it, either with ``close()``
    or by using it as an async context manager. MetadataPipeline only closes
    clients it created itself.
    """

    def __init__(self, cfg: Optional[PipelineConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 transport: Optional[Callable[[List[Dict[str, Any]]], Awaitable[str]]] = None):
        self.config = cfg or default_config
        self.session = session
        self._owns_session = session is None
        self._transport = transport
        self._client_timeout = aiohttp.ClientTimeout(
            total=self.config.request_timeout)
        self.openai_client: Optional[AsyncOpenAI] = None
        self.request_count = 0

        if self.config.api_backend == "openai" and transport is None and self.config.api_key_configured:
            self.openai_client = AsyncOpenAI(
                base_url=self.config.openrouter_base_url,
                api_key=self.config.openrouter_api_key,
                timeout=self.config.request_timeout,
                max_retries=0,
            )
            logger.info("OpenRouter SDK client initialized")

        logger.info(
            f"AnalysisClient initialized (backend={self.config.api_backend}, "
            f"model={self.config.openrouter_model}, timeout={self.config.request_timeout}s)")

    async def __aenter__(self) -> "AnalysisClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def start(self):
        """Open the HTTP session when this client owns it"""
        if self._transport is not None or self.config.api_backend != "http":
            return
        if not self.session or self.session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.config.connection_pool_size,
                enable_cleanup_closed=True,
                ttl_dns_cache=300,
            )
            self.session = aiohttp.ClientSession(
                connector=connector, timeout=self._client_timeout)
            self._owns_session = True
            logger.info("Started aiohttp session (pool_size=%d, timeout=%ss)",
                        self.config.connection_pool_size, self.config.request_timeout)

    async def close(self):
        """Clean up the HTTP session and SDK client"""
        if self.session and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None if self._owns_session else self.session
        if self.openai_client is not None:
            await self.openai_client.close()
            self.openai_client = None

    async def check_availability(self) -> bool:
        """Upfront check run before any chunk work begins"""
        if self._transport is not None:
            return True
        if not self.config.api_key_configured:
            logger.error(
                "OpenRouter API key is not configured. Set OPENROUTER_API_KEY.")
            return False
        if self.config.api_backend == "http" and not self.config.analysis_endpoint:
            logger.error("ANALYSIS_ENDPOINT is not configured")
            return False
        if self.config.api_backend not in ("http", "openai"):
            logger.error(f"Unknown API backend '{self.config.api_backend}'")
            return False
        return True

    def build_content(self, chunk: Chunk) -> List[Dict[str, Any]]:
        """Text instruction followed by one image part per item"""
        content: List[Dict[str, Any]] = [
            {'type': 'text', 'text': build_prompt(len(chunk), self.config)}]
        for item in chunk.items:
            content.append(
                {'type': 'image_url', 'image_url': {'url': item.data_url}})
        return content

    async def analyze_chunk(self, chunk: Chunk) -> List[AnalyzedItem]:
        """Analyze every image of ``chunk`` in a single request"""
        content = self.build_content(chunk)
        self.request_count += 1
        logger.debug("Sending chunk %d with %d images",
                     chunk.chunk_number, len(chunk))

        if self._transport is not None:
            text = await self._transport(content)
        elif self.config.api_backend == "openai":
            text = await self._call_openai(content)
        else:
            text = await self._call_http(content)

        return parse_analysis_response(text, chunk, self.config)

    def _request_body(self, content: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            'model': self.config.openrouter_model,
            'messages': [{'role': 'user', 'content': content}],
            'temperature': 0.2,
        }

    def _extra_headers(self) -> Dict[str, str]:
        return {
            'HTTP-Referer': self.config.openrouter_referer,
            'X-Title': self.config.openrouter_site_title,
        }

    async def _call_http(self, content: List[Dict[str, Any]]) -> str:
        """POST to the chat-completions endpoint via aiohttp"""
        if not self.session or self.session.closed:
            self.start()

        headers = {
            'Authorization': f"Bearer {self.config.openrouter_api_key}",
            'Content-Type': 'application/json',
            **self._extra_headers(),
        }

        try:
            async with self.session.post(self.config.analysis_endpoint,
                                         json=self._request_body(content),
                                         headers=headers,
                                         timeout=self._client_timeout) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise _status_error(resp.status, text)
                try:
                    completion = await resp.json(content_type=None)
                except ValueError as e:
                    raise MalformedResponseError(
                        f"Response body is not JSON: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientError(
                f"Timeout after {self.config.request_timeout}s calling analysis service") from e
        except aiohttp.ClientError as e:
            raise TransientError(f"Network error: {e!r}") from e

        # OpenRouter reports some upstream failures inside a 200 body
        error = _get_field(completion, 'error')
        if error:
            code = _get_field(error, 'code')
            message = _get_field(error, 'message') or str(error)
            raise _status_error(code if isinstance(
                code, int) else 502, str(message))

        return extract_completion_text(completion)

    async def _call_openai(self, content: List[Dict[str, Any]]) -> str:
        """Call OpenRouter via the OpenAI SDK"""
        if self.openai_client is None:
            raise AnalysisServiceError(
                "OpenRouter SDK client unavailable: OPENROUTER_API_KEY not configured")

        try:
            completion = await self.openai_client.chat.completions.create(
                extra_headers=self._extra_headers(),
                **self._request_body(content),
            )
        except openai.RateLimitError as e:
            raise RateLimitError(str(e)) from e
        except openai.APITimeoutError as e:
            raise TransientError(
                f"Timeout after {self.config.request_timeout}s calling analysis service") from e
        except openai.APIConnectionError as e:
            raise TransientError(f"Network error: {e!r}") from e
        except openai.APIStatusError as e:
            raise _status_error(e.status_code, str(e)) from e

        return extract_completion_text(completion)
