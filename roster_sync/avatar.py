"""
Avatar authenticity classification.

Decides whether a profile picture is a real photo or a generated placeholder
(vendor default, Gravatar identicon, initials on a solid background). A cheap
URL pattern check runs first; pictures without a URL signature are downloaded
and their dominant colour coverage is estimated from a random pixel sample.

Classification never raises: download or decode problems resolve to
`analysis-failed`, which keeps the picture (fail-open).
"""

import io
import re
import asyncio
import logging
import random
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

import httpx
from PIL import Image

from roster_sync.models import AvatarDecision, AvatarMethod
from roster_sync.retry import async_retry_call, is_retryable_error, create_retry_callback

logger = logging.getLogger(__name__)

DEFAULT_URL_PATTERNS = [
    # Chat vendor default avatars
    'a.slack-edge.com/df10d/img/avatars/ava_',
    'a.slack-edge.com/df10d/img/avatars/avatar-',
    'a.slack-edge.com/df10d/img/avatars/default',
    '/img/avatars/ava_',
    'slack.com/avatars/default',
    'slack.com/avatars/gravatar',
    'slack.com/avatars/identicon',
    'slack.com/avatars/initials',
    'slack.com/avatars/avatar-',
    # Gravatar anonymous hashes (all zeros, md5 of the empty string)
    'gravatar.com/avatar/00000000000000000000000000000000',
    'gravatar.com/avatar/d41d8cd98f00b204e9800998ecf8427e',
    # Generic file names
    'default-avatar',
    'default_avatar',
    'default-',
    'avatar-default',
    'placeholder-avatar',
    'no-avatar',
    'no_avatar',
]

DEFAULT_GRAVATAR_FALLBACK_MARKERS = [
    'd=https%3A%2F%2Fa.slack-edge.com%2Fdf10d%2Fimg%2Favatars%2Fava_',
]

DEFAULT_GENERIC_PATTERNS = [
    r'/avatar/[a-f0-9]{32}\?(?:.*&)?d=(identicon|mm|retro|wavatar|monsterid|robohash)\b',
]

DEFAULT_SETTINGS = {
    'canvas_size': 50,
    'sample_size': 100,
    'threshold': 70.0,
    'fetch_timeout_seconds': 10.0,
    'fetch_attempts': 2,
    'fetch_retry_wait_seconds': 0.5,
    'max_concurrent_fetches': 8,
    'max_image_bytes': 10 * 1024 * 1024,
}


class AvatarFetchError(Exception):
    """Raised when an avatar cannot be downloaded."""
    pass


def match_url_pattern(image_ref: str,
                      url_patterns: List[str],
                      fallback_markers: List[str],
                      generic_patterns: List[re.Pattern]) -> Optional[AvatarMethod]:
    """
    Check an image URL against the known placeholder signatures.

    Returns:
        The matching method, or None when the URL has no placeholder signature
    """
    lowered = image_ref.lower()

    if any(pattern.lower() in lowered for pattern in url_patterns):
        return AvatarMethod.URL_PATTERN

    if 'gravatar.com/avatar/' in lowered and any(marker.lower() in lowered for marker in fallback_markers):
        return AvatarMethod.GRAVATAR_FALLBACK

    if any(pattern.search(image_ref) for pattern in generic_patterns):
        return AvatarMethod.GRAVATAR_GENERIC

    return None


def sample_dominant_color(image_bytes: bytes, canvas_size: int, sample_size: int,
                          rng: random.Random) -> Tuple[float, str]:
    """
    Estimate how much of an image is covered by its most frequent colour.

    The image is downscaled to a square canvas and `sample_size` pixel
    positions are drawn uniformly with replacement.

    Returns:
        Tuple of (coverage percentage, dominant colour as "r,g,b")
    """
    with Image.open(io.BytesIO(image_bytes)) as image:
        canvas = image.convert('RGB').resize((canvas_size, canvas_size))

    pixels = canvas.tobytes()
    total_pixels = canvas_size * canvas_size
    buckets = Counter()

    for _ in range(sample_size):
        offset = rng.randrange(total_pixels) * 3
        buckets[(pixels[offset], pixels[offset + 1], pixels[offset + 2])] += 1

    (r, g, b), top_count = buckets.most_common(1)[0]
    coverage = (top_count / sample_size) * 100
    return coverage, f"{r},{g},{b}"


class AvatarClassifier:
    """
    Classifies profile pictures as placeholders or authentic photos.

    Downloads share one HTTP client and a semaphore, so at most
    `max_concurrent_fetches` images are in flight (and decoded) at once.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 rng: Optional[random.Random] = None):
        config = config or {}
        settings = dict(DEFAULT_SETTINGS)
        settings.update({k: v for k, v in config.items() if k in DEFAULT_SETTINGS and v is not None})

        self.canvas_size = int(settings['canvas_size'])
        self.sample_size = int(settings['sample_size'])
        self.threshold = float(settings['threshold'])
        self.fetch_timeout = float(settings['fetch_timeout_seconds'])
        self.fetch_attempts = int(settings['fetch_attempts'])
        self.fetch_retry_wait = float(settings['fetch_retry_wait_seconds'])
        self.max_concurrent_fetches = int(settings['max_concurrent_fetches'])
        self.max_image_bytes = int(settings['max_image_bytes'])

        self.url_patterns = list(config.get('url_patterns') or DEFAULT_URL_PATTERNS)
        self.fallback_markers = list(config.get('gravatar_fallback_markers') or DEFAULT_GRAVATAR_FALLBACK_MARKERS)
        self.generic_patterns = [
            re.compile(pattern, re.IGNORECASE)
            for pattern in (config.get('generic_patterns') or DEFAULT_GENERIC_PATTERNS)
        ]

        self.rng = rng or random.Random()
        self._client = client
        self._owns_client = client is None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

    async def __aenter__(self) -> 'AvatarClassifier':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True)
        return self._client

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created in the running loop; the classifier is usually built before asyncio.run
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent_fetches)
            self._semaphore_loop = loop
        return self._semaphore

    async def classify(self, image_ref: Optional[str], display_name: str = 'Unknown') -> AvatarDecision:
        """
        Decide whether a profile picture is a placeholder.

        Args:
            image_ref: URL of the profile picture, if any
            display_name: Member name, used for logging only

        Returns:
            AvatarDecision; never raises
        """
        if not image_ref:
            logger.debug(f"{display_name}: no profile image")
            return AvatarDecision(is_default=True, method=AvatarMethod.NO_IMAGE)

        method = match_url_pattern(image_ref, self.url_patterns, self.fallback_markers, self.generic_patterns)
        if method is not None:
            logger.debug(f"{display_name}: placeholder URL ({method.value})")
            return AvatarDecision(is_default=True, method=method)

        try:
            async with self._get_semaphore():
                image_bytes = await async_retry_call(
                    self._download, (image_ref,),
                    max_attempts=self.fetch_attempts,
                    delay=self.fetch_retry_wait,
                    should_retry=is_retryable_error,
                    on_retry=create_retry_callback(f"Avatar download for {display_name}"),
                )
                loop = asyncio.get_running_loop()
                coverage, dominant = await loop.run_in_executor(
                    None, sample_dominant_color, image_bytes, self.canvas_size, self.sample_size, self.rng
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info(f"{display_name}: avatar analysis failed, keeping image ({type(e).__name__}: {e})")
            return AvatarDecision.analysis_failed()

        is_default = coverage > self.threshold
        method = AvatarMethod.COLOR_ANALYSIS if is_default else AvatarMethod.REAL_AVATAR
        logger.debug(f"{display_name}: {coverage:.1f}% coverage by {dominant} "
                     f"from {self.sample_size} pixels -> {method.value}")
        return AvatarDecision(is_default=is_default, method=method, coverage=coverage, dominant_color=dominant)

    async def _download(self, url: str) -> bytes:
        response = await self._get_client().get(url, timeout=self.fetch_timeout)
        response.raise_for_status()
        content = response.content
        if not content:
            raise AvatarFetchError(f"Empty response body from {url}")
        if len(content) > self.max_image_bytes:
            raise AvatarFetchError(f"Image larger than {self.max_image_bytes} bytes: {url}")
        return content
