import sys
import re
import uuid
import logging
import asyncio
import argparse
import contextlib
import time
from collections import deque
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, UTC
from enum import Enum
from typing import List, Dict, Optional, Tuple, Deque, TypedDict, Any, Awaitable, Callable
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
import httpx
from aiohttp import web
from groq import AsyncGroq
from google import genai
from google.genai import types
from pydantic import BaseModel, ConfigDict, Field, field_validator
from langgraph.graph import StateGraph, END
from tenacity import AsyncRetrying, RetryError, retry_if_not_exception_type, stop_after_attempt, wait_exponential
from pythonjsonlogger import jsonlogger
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from settings import settings
from prompts import (
    COMMENT_TEAM_SOP,
    COMMENT_RULES,
    GENERATION_DIRECTIVES,
    OWNER_LINE,
    OUTPUT_CHECKLIST,
    LANGUAGE_DIRECTIVE,
    TRANSCRIPT_SECTION,
    IMAGE_SECTION
)
from metrics import JOB_COUNT, STAGE_DURATION, RETRY_COUNT, MEDIA_FALLBACK_COUNT, QUEUE_DEPTH

# -----------------------------
# Versioning
# -----------------------------
__version__ = "1.0.0"

# -----------------------------
# Logging Setup
# -----------------------------
def setup_logging():
    log_file = settings.log_file
    max_bytes = 10_000_000  # 10MB
    backup_count = 5

    logger = logging.getLogger()
    logger.setLevel(logging.INFO)

    # Console Handler with human-readable format
    console_handler = logging.StreamHandler(sys.stdout)
    console_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File Handler with JSON format for structured logging
    file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
    log_format = '%(asctime)s %(name)s %(levelname)s %(message)s %(job_id)s %(channel_id)s'
    json_formatter = jsonlogger.JsonFormatter(log_format)
    file_handler.setFormatter(json_formatter)
    logger.addHandler(file_handler)

    return logger

logger = setup_logging()

class JobContextAdapter(logging.LoggerAdapter):
    """Adapter to inject job_id and channel_id into logs"""
    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update({
            "job_id": self.extra.get("job_id", "N/A"),
            "channel_id": self.extra.get("channel_id", "N/A")
        })
        kwargs["extra"] = extra
        return msg, kwargs

# -----------------------------
# Exceptions
# -----------------------------
UNCLASSIFIED_MESSAGE = "Please try a different post."

class CommentBotError(Exception):
    """Base for failures that map to a user-facing sentence"""
    user_message = UNCLASSIFIED_MESSAGE

class NotFoundError(CommentBotError):
    user_message = "The post might be private or unavailable."

class TranscriptionError(CommentBotError):
    user_message = "I had trouble with the video audio."

class FetchError(CommentBotError):
    user_message = "I couldn't download the post image."

class GenerationError(CommentBotError):
    user_message = "Our comment system had an issue."

class ExhaustedRetriesError(CommentBotError):
    """Raised once every attempt at an external call has failed"""
    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error

def describe_failure(error: BaseException) -> str:
    """One human sentence for the failure, followed by the raw error text."""
    root = error.last_error if isinstance(error, ExhaustedRetriesError) else error
    sentence = root.user_message if isinstance(root, CommentBotError) else UNCLASSIFIED_MESSAGE
    return f"{sentence} Error: `{error}`"

# -----------------------------
# Models & Schemas
# -----------------------------
class ContentKind(str, Enum):
    VIDEO = "Video"
    IMAGE = "Image"
    CAROUSEL = "Carousel"
    UNKNOWN = "Unknown"

    @classmethod
    def from_token(cls, token: Optional[str]) -> "ContentKind":
        kind = CONTENT_KIND_TOKENS.get((token or "").strip().lower())
        if kind is None:
            logger.info(f"Unrecognized content kind token {token!r}, treating as Unknown")
            return cls.UNKNOWN
        return kind

# Scraper actors have reported both the short and the Graph* spellings
CONTENT_KIND_TOKENS: Dict[str, ContentKind] = {
    "video": ContentKind.VIDEO,
    "graphvideo": ContentKind.VIDEO,
    "reel": ContentKind.VIDEO,
    "clips": ContentKind.VIDEO,
    "image": ContentKind.IMAGE,
    "graphimage": ContentKind.IMAGE,
    "sidecar": ContentKind.CAROUSEL,
    "graphsidecar": ContentKind.CAROUSEL,
    "carousel": ContentKind.CAROUSEL,
}

class MediaBranch(str, Enum):
    VIDEO = "video"
    IMAGE = "image"
    CAPTION = "caption"

class JobStage(str, Enum):
    QUEUED = "queued"
    SCRAPING = "scraping"
    ANALYZING_MEDIA = "analyzing_media"
    GENERATING = "generating"
    POSTING = "posting"
    DONE = "done"
    FAILED = "failed"

class PostMetadata(BaseModel):
    """Post details returned by the Instagram scraper"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    caption: str = ""
    image_url: Optional[str] = Field(None, alias="imageUrl")
    video_url: Optional[str] = Field(None, alias="videoUrl")
    display_url: Optional[str] = Field(None, alias="displayUrl")
    owner_name: Optional[str] = Field(None, alias="ownerFullName")
    content_kind: ContentKind = Field(ContentKind.UNKNOWN, alias="type")

    @field_validator("caption", mode="before")
    @classmethod
    def _blank_caption(cls, value: Any) -> Any:
        return value or ""

    @field_validator("content_kind", mode="before")
    @classmethod
    def _parse_kind(cls, value: Any) -> ContentKind:
        if isinstance(value, ContentKind):
            return value
        return ContentKind.from_token(value)

@dataclass(frozen=True)
class Job:
    """One submitted link and where to deliver its comments"""
    url: str
    channel_id: str
    thread_id: str
    requester_id: str
    num_comments: int
    language: str
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

@dataclass(frozen=True)
class FetchedImage:
    data: bytes
    mime_type: str

@dataclass(frozen=True)
class MediaContext:
    """Either a transcript, an image, or nothing (caption-only)."""
    transcript: Optional[str] = None
    image: Optional[FetchedImage] = None

    def __post_init__(self):
        if self.transcript is not None and self.image is not None:
            raise ValueError("MediaContext carries a transcript or an image, not both")

    @property
    def kind(self) -> MediaBranch:
        if self.transcript is not None:
            return MediaBranch.VIDEO
        if self.image is not None:
            return MediaBranch.IMAGE
        return MediaBranch.CAPTION

@dataclass(frozen=True)
class PromptPart:
    text: Optional[str] = None
    image: Optional[FetchedImage] = None

@dataclass(frozen=True)
class StructuredPrompt:
    """Generation request: system instruction plus ordered text/image parts"""
    system_instruction: str
    parts: Tuple[PromptPart, ...]

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.parts if p.text)

    @property
    def has_image(self) -> bool:
        return any(p.image is not None for p in self.parts)

class PipelineState(TypedDict):
    """Complete state tracked through the pipeline"""
    job: Job
    stage: JobStage
    post_data: Optional[PostMetadata]
    branch: Optional[str]
    media: Optional[MediaContext]
    prompt: Optional[StructuredPrompt]
    raw_output: Optional[str]
    comments: List[str]

# -----------------------------
# Retry Executor
# -----------------------------
NON_RETRYABLE_ERRORS = (NotFoundError,)

class RetryExecutor:
    """Re-invokes an async operation with pure exponential backoff (d, 2d, 4d, ...)"""
    def __init__(
        self,
        max_attempts: int = settings.retry_attempts,
        initial_delay: float = settings.retry_initial_delay,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self._sleep = sleep

    async def __call__(self, operation: Callable[..., Awaitable[Any]], *args, operation_name: Optional[str] = None, **kwargs) -> Any:
        name = operation_name or getattr(operation, "__name__", "operation")

        def log_attempt(retry_state):
            RETRY_COUNT.labels(operation=name).inc()
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{self.max_attempts} of {name} failed: "
                f"{retry_state.outcome.exception()!r}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, exp_base=2),
            retry=retry_if_not_exception_type(NON_RETRYABLE_ERRORS),
            after=log_attempt,
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await operation(*args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise ExhaustedRetriesError(name, self.max_attempts, last_error) from last_error

# -----------------------------
# Content Classification
# -----------------------------
def usable_image_url(post: PostMetadata) -> Optional[str]:
    for candidate in (post.display_url, post.image_url):
        if isinstance(candidate, str) and candidate.startswith("http"):
            return candidate
    return None

def classify_media(post: PostMetadata) -> MediaBranch:
    """Pick the media analysis branch for a scraped post."""
    if post.content_kind is ContentKind.VIDEO and post.video_url:
        return MediaBranch.VIDEO
    if post.content_kind in (ContentKind.IMAGE, ContentKind.CAROUSEL) and usable_image_url(post):
        return MediaBranch.IMAGE
    return MediaBranch.CAPTION

# -----------------------------
# Prompt Builder
# -----------------------------
def build_prompt(
    caption: str,
    owner_name: Optional[str],
    media: MediaContext,
    num_comments: int,
    language: str,
    default_language: str = settings.default_language
) -> StructuredPrompt:
    """
    Assemble the generation request for one post.

    The SOP goes out both as the system instruction and at the top of the text
    part. A transcript is appended to the text part; an image becomes a second
    part that always follows the text directive.
    """
    sections = [COMMENT_TEAM_SOP]
    if language and language.lower() != default_language.lower():
        sections.append(LANGUAGE_DIRECTIVE.format(language=language))
    sections.append(COMMENT_RULES.format(num_comments=num_comments))
    owner_line = OWNER_LINE.format(owner_name=owner_name) if owner_name else ""
    sections.append(GENERATION_DIRECTIVES.format(
        num_comments=num_comments,
        owner_line=owner_line,
        caption=caption or ""
    ))
    sections.append(OUTPUT_CHECKLIST)

    if media.transcript is not None:
        sections.append(TRANSCRIPT_SECTION.format(transcript=media.transcript))
    elif media.image is not None:
        sections.append(IMAGE_SECTION)

    parts = [PromptPart(text="\n\n".join(s.strip() for s in sections))]
    if media.image is not None:
        parts.append(PromptPart(image=media.image))
    return StructuredPrompt(system_instruction=COMMENT_TEAM_SOP, parts=tuple(parts))

# -----------------------------
# Comment Formatter
# -----------------------------
BLANK_LINE_RE = re.compile(r"\n[^\S\n]*\n")

def format_comments(raw: str) -> List[str]:
    if not raw:
        return []
    text = raw.replace("\r\n", "\n").replace("\r", "\n").strip()
    if not text:
        return []
    if BLANK_LINE_RE.search(text):
        blocks = BLANK_LINE_RE.split(text)
    else:
        blocks = text.split("\n")
    return [block.strip() for block in blocks if block.strip()]

def render_comments(comments: List[str]) -> str:
    return "\n\n".join(comments)

# -----------------------------
# External Services
# -----------------------------
APIFY_BASE_URL = "https://api.apify.com/v2"
DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"

class ApifyScraper:
    """Resolves an Instagram post URL to PostMetadata through an Apify actor run"""
    def __init__(self, token: str, actor_id: str, client: httpx.AsyncClient, timeout: float = settings.scrape_timeout):
        self.token = token
        self.actor_id = actor_id.replace("/", "~")
        self.client = client
        self.timeout = timeout

    async def scrape(self, url: str) -> PostMetadata:
        logger.info(f"Scraping Instagram post: {url}")
        response = await self.client.post(
            f"{APIFY_BASE_URL}/acts/{self.actor_id}/run-sync-get-dataset-items",
            params={"token": self.token},
            json={
                "directUrls": [url],
                "resultsType": "posts",
                "resultsLimit": 1,
                "addParentData": False
            },
            timeout=self.timeout
        )
        response.raise_for_status()
        items = response.json()
        if not items:
            raise NotFoundError("Post not found or inaccessible by Apify.")
        item = items[0]
        if item.get("error"):
            raise NotFoundError(f"Post not found or inaccessible by Apify: {item.get('errorDescription') or item['error']}")
        return PostMetadata.model_validate(item)

class DeepgramTranscriber:
    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient,
        model: str = settings.deepgram_model,
        language: str = settings.transcription_language,
        timeout: float = settings.http_timeout
    ):
        self.api_key = api_key
        self.client = client
        self.model = model
        self.language = language
        self.timeout = timeout

    async def transcribe(self, video_url: str) -> str:
        logger.info(f"Transcribing video: {video_url}")
        try:
            response = await self.client.post(
                DEEPGRAM_LISTEN_URL,
                params={
                    "model": self.model,
                    "smart_format": "true",
                    "language": self.language,
                    "paragraphs": "true"
                },
                headers={"Authorization": f"Token {self.api_key}"},
                json={"url": video_url},
                timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
            return payload["results"]["channels"][0]["alternatives"][0]["transcript"]
        except httpx.HTTPError as e:
            raise TranscriptionError(f"Deepgram transcription error: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise TranscriptionError(f"Deepgram transcription error: unexpected response ({e!r})") from e

class HttpImageFetcher:
    def __init__(self, client: httpx.AsyncClient, timeout: float = settings.http_timeout):
        self.client = client
        self.timeout = timeout

    async def fetch(self, image_url: str) -> FetchedImage:
        logger.info(f"Downloading image for analysis: {image_url}")
        try:
            response = await self.client.get(image_url, follow_redirects=True, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch image: {e}") from e
        mime_type = response.headers.get("content-type") or "image/jpeg"
        return FetchedImage(data=response.content, mime_type=mime_type.split(";")[0].strip())

class GroqGenerator:
    """Text-only generator used when Gemini is unavailable"""
    def __init__(self, api_key: str, model: str = settings.groq_model):
        self.client = AsyncGroq(api_key=api_key)
        self.model = model

    async def generate(self, prompt: StructuredPrompt) -> str:
        try:
            chat_completion = await self.client.chat.completions.create(
                messages=[
                    {"role": "system", "content": prompt.system_instruction},
                    {"role": "user", "content": prompt.text}
                ],
                model=self.model,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature,
                timeout=30.0
            )
        except Exception as e:
            raise GenerationError(f"Groq generation error: {e}") from e
        text = chat_completion.choices[0].message.content
        if not text or not text.strip():
            raise GenerationError("Groq returned an empty response")
        return text

class GeminiGenerator:
    """Wrapper for Gemini calls with an optional text-only fallback"""
    def __init__(self, api_key: str, model: str = settings.gemini_model, fallback: Optional[GroqGenerator] = None):
        self.client = genai.Client(api_key=api_key)
        self.model = model
        self.fallback = fallback

    async def generate(self, prompt: StructuredPrompt) -> str:
        try:
            return await self._call_gemini(prompt)
        except GenerationError:
            if self.fallback is None or prompt.has_image:
                raise
            logger.warning("Gemini call failed, falling back to Groq", exc_info=True)
            return await self.fallback.generate(prompt)

    async def _call_gemini(self, prompt: StructuredPrompt) -> str:
        logger.info("Generating comments with Gemini...")
        contents = []
        for part in prompt.parts:
            if part.image is not None:
                contents.append(types.Part.from_bytes(data=part.image.data, mime_type=part.image.mime_type))
            else:
                contents.append(types.Part.from_text(text=part.text))
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config={
                    "system_instruction": prompt.system_instruction,
                    "temperature": settings.llm_temperature,
                }
            )
        except Exception as e:
            raise GenerationError(f"Gemini generation error: {e}") from e
        text = response.text
        if not text or not text.strip():
            raise GenerationError("Gemini returned an empty response")
        return text

class SlackNotifier:
    """Chat surface: ephemeral notices, threaded replies and deletions"""
    def __init__(self, client: AsyncWebClient):
        self.client = client

    async def post_ephemeral(self, channel: str, user: str, text: str, thread_id: Optional[str] = None) -> Optional[str]:
        try:
            response = await self.client.chat_postEphemeral(channel=channel, user=user, text=text, thread_ts=thread_id)
        except SlackApiError as e:
            logger.warning(f"Failed to send ephemeral message: {e.response.get('error')}")
            return None
        return response.get("message_ts")

    async def post_message(self, channel: str, text: str, thread_id: Optional[str] = None) -> None:
        await self.client.chat_postMessage(channel=channel, text=text, thread_ts=thread_id)

    async def delete_message(self, channel: str, handle: str) -> None:
        try:
            await self.client.chat_delete(channel=channel, ts=handle)
        except SlackApiError as e:
            # chat.delete cannot reach ephemeral messages; they expire client-side
            if e.response.get("error") != "message_not_found":
                raise
            logger.debug(f"Message {handle} not deletable (ephemeral or already gone)")

# -----------------------------
# Job Pipeline
# -----------------------------
PROCESSING_NOTICE = "<@{user}>: I'm processing your Instagram link ({url}). This might take a moment... ⏳"
STILL_WORKING_NOTICE = "This is taking longer than expected. Still working on it..."
FAILURE_REPLY = "Sorry <@{user}>, I couldn't process that link. {details} 😔"

class CommentWorkflow:
    """
    Runs one Job end-to-end.

    Scrape -> classify -> (transcribe | fetch image | caption only) -> generate
    -> format -> reply. Each external call is wrapped by the retry executor.
    Exactly one terminal reply is posted per job: the comments or an error.
    """
    def __init__(
        self,
        scraper,
        transcriber,
        image_fetcher,
        generator,
        notifier,
        retry: Optional[RetryExecutor] = None,
        warning_delay: float = settings.warning_delay_seconds
    ):
        self.scraper = scraper
        self.transcriber = transcriber
        self.image_fetcher = image_fetcher
        self.generator = generator
        self.notifier = notifier
        self.retry = retry or RetryExecutor()
        self.warning_delay = warning_delay
        self.app = self._build_graph()

    @staticmethod
    def _job_logger(job: Job) -> JobContextAdapter:
        return JobContextAdapter(logger, {"job_id": job.job_id, "channel_id": job.channel_id})

    @contextmanager
    def _track(self, state: PipelineState, node_name: str, stage: JobStage):
        log = self._job_logger(state["job"])
        if state["stage"] is not stage:
            log.info(f"Stage {state['stage'].value} -> {stage.value}")
            state["stage"] = stage
        start_time = time.perf_counter()
        yield log
        duration = time.perf_counter() - start_time
        STAGE_DURATION.labels(stage=node_name).observe(duration)
        log.info(f"{node_name} completed in {duration:.2f}s")

    async def _scrape(self, state: PipelineState) -> PipelineState:
        with self._track(state, "scrape", JobStage.SCRAPING):
            post = await self.retry(self.scraper.scrape, state["job"].url, operation_name="scrape")
            if post is None:
                raise NotFoundError("Post not found or inaccessible.")
            state["post_data"] = post
        return state

    async def _classify(self, state: PipelineState) -> PipelineState:
        with self._track(state, "classify", JobStage.ANALYZING_MEDIA) as log:
            post = state["post_data"]
            branch = classify_media(post)
            if branch is MediaBranch.VIDEO:
                log.info("Detected video post, attempting transcription...")
            elif branch is MediaBranch.IMAGE:
                log.info("Detected image post, attempting to download image for analysis...")
            elif post.content_kind in (ContentKind.IMAGE, ContentKind.CAROUSEL):
                log.warning("Invalid image URL found for image post, proceeding without image analysis.")
                MEDIA_FALLBACK_COUNT.labels(reason="invalid_image_url").inc()
            elif post.content_kind is ContentKind.VIDEO:
                log.warning("Video post without a video URL, proceeding with caption only.")
                MEDIA_FALLBACK_COUNT.labels(reason="missing_video_url").inc()
            else:
                log.info(f"Detected unsupported or unknown post type ({post.content_kind.value}), proceeding with caption only.")
            state["branch"] = branch.value
            state["media"] = MediaContext()
        return state

    async def _transcribe(self, state: PipelineState) -> PipelineState:
        with self._track(state, "transcribe", JobStage.ANALYZING_MEDIA) as log:
            transcript = await self.retry(
                self.transcriber.transcribe, state["post_data"].video_url, operation_name="transcribe"
            )
            if transcript and transcript.strip():
                state["media"] = MediaContext(transcript=transcript.strip())
            else:
                log.warning("Transcription came back empty, proceeding with caption only.")
                MEDIA_FALLBACK_COUNT.labels(reason="empty_transcript").inc()
        return state

    async def _fetch_image(self, state: PipelineState) -> PipelineState:
        with self._track(state, "fetch_image", JobStage.ANALYZING_MEDIA) as log:
            image_url = usable_image_url(state["post_data"])
            try:
                image = await self.retry(self.image_fetcher.fetch, image_url, operation_name="fetch_image")
            except (FetchError, ExhaustedRetriesError):
                log.warning("Image download failed for image post, proceeding without image analysis.", exc_info=True)
                MEDIA_FALLBACK_COUNT.labels(reason="image_fetch_failed").inc()
            else:
                state["media"] = MediaContext(image=image)
        return state

    async def _generate(self, state: PipelineState) -> PipelineState:
        job = state["job"]
        post = state["post_data"]
        with self._track(state, "generate", JobStage.GENERATING):
            prompt = build_prompt(post.caption, post.owner_name, state["media"], job.num_comments, job.language)
            state["prompt"] = prompt
            state["raw_output"] = await self.retry(self.generator.generate, prompt, operation_name="generate")
        return state

    async def _format(self, state: PipelineState) -> PipelineState:
        job = state["job"]
        with self._track(state, "format", JobStage.GENERATING) as log:
            comments = format_comments(state["raw_output"])
            if not comments:
                raise GenerationError("Generator output contained no comments")
            if len(comments) != job.num_comments:
                log.info(f"Requested {job.num_comments} comments, generator returned {len(comments)}")
            state["comments"] = comments
        return state

    async def _reply(self, state: PipelineState) -> PipelineState:
        job = state["job"]
        with self._track(state, "reply", JobStage.POSTING):
            await self.notifier.post_message(job.channel_id, render_comments(state["comments"]), job.thread_id)
        return state

    def _route_media(self, state: PipelineState) -> str:
        return state["branch"]

    def _build_graph(self):
        workflow = StateGraph(PipelineState)
        workflow.add_node("scrape", self._scrape)
        workflow.add_node("classify", self._classify)
        workflow.add_node("transcribe", self._transcribe)
        workflow.add_node("fetch_image", self._fetch_image)
        workflow.add_node("generate", self._generate)
        workflow.add_node("format", self._format)
        workflow.add_node("reply", self._reply)

        workflow.set_entry_point("scrape")
        workflow.add_edge("scrape", "classify")
        workflow.add_conditional_edges(
            "classify",
            self._route_media,
            {
                MediaBranch.VIDEO.value: "transcribe",
                MediaBranch.IMAGE.value: "fetch_image",
                MediaBranch.CAPTION.value: "generate"
            }
        )
        workflow.add_edge("transcribe", "generate")
        workflow.add_edge("fetch_image", "generate")
        workflow.add_edge("generate", "format")
        workflow.add_edge("format", "reply")
        workflow.add_edge("reply", END)

        return workflow.compile()

    @asynccontextmanager
    async def _timeout_warning(self, job: Job, log: JobContextAdapter):
        async def warn_later():
            await asyncio.sleep(self.warning_delay)
            log.info("Job still running, sending timeout warning")
            try:
                await self.notifier.post_ephemeral(job.channel_id, job.requester_id, STILL_WORKING_NOTICE, job.thread_id)
            except Exception:
                log.warning("Failed to send timeout warning", exc_info=True)

        task = asyncio.create_task(warn_later())
        try:
            yield task
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _post_processing_notice(self, job: Job, log: JobContextAdapter) -> Optional[str]:
        try:
            handle = await self.notifier.post_ephemeral(
                job.channel_id,
                job.requester_id,
                PROCESSING_NOTICE.format(user=job.requester_id, url=job.url),
                job.thread_id
            )
        except Exception:
            log.warning("Failed to send initial ephemeral message", exc_info=True)
            return None
        if handle is None:
            log.warning("Initial ephemeral message was not acknowledged")
        return handle

    async def _remove_notice(self, job: Job, handle: Optional[str], log: JobContextAdapter):
        if not handle:
            return
        try:
            await self.notifier.delete_message(job.channel_id, handle)
        except Exception:
            log.warning("Failed to delete ephemeral message", exc_info=True)

    async def _report_failure(self, job: Job, error: BaseException, log: JobContextAdapter):
        text = FAILURE_REPLY.format(user=job.requester_id, details=describe_failure(error))
        try:
            await self.notifier.post_message(job.channel_id, text, job.thread_id)
        except Exception:
            log.error("Failed to post error reply", exc_info=True)

    def _initial_state(self, job: Job) -> PipelineState:
        return {
            "job": job,
            "stage": JobStage.QUEUED,
            "post_data": None,
            "branch": None,
            "media": None,
            "prompt": None,
            "raw_output": None,
            "comments": []
        }

    async def run(self, job: Job) -> JobStage:
        log = self._job_logger(job)
        log.info(f"Processing {job.url} ({job.num_comments} comments, {job.language})")
        start_time = time.perf_counter()

        handle = await self._post_processing_notice(job, log)
        async with self._timeout_warning(job, log):
            try:
                final = await self.app.ainvoke(self._initial_state(job))
            except Exception as e:
                log.error(f"Job failed for {job.url}", exc_info=True)
                await self._report_failure(job, e, log)
                outcome = JobStage.FAILED
            else:
                log.info(f"Successfully generated and posted {len(final['comments'])} comments for {job.url}")
                outcome = JobStage.DONE
        await self._remove_notice(job, handle, log)

        JOB_COUNT.labels(status=outcome.value).inc()
        log.info(f"Job {outcome.value} in {time.perf_counter() - start_time:.2f}s")
        return outcome

# -----------------------------
# Queue Manager
# -----------------------------
class QueueManager:
    """
    FIFO job queue drained by a single worker.

    Only the event loop thread touches the deque. The processing flag stays set
    until the job is terminal and the cooldown elapsed, for successes and
    failures alike.
    """
    def __init__(self, workflow: CommentWorkflow, cooldown: float = settings.cooldown_seconds, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.workflow = workflow
        self.cooldown = cooldown
        self._sleep = sleep
        self._queue: Deque[Job] = deque()
        self._processing = False
        self._worker: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def pending(self) -> List[Job]:
        return list(self._queue)

    def enqueue(self, job: Job) -> int:
        self._queue.append(job)
        position = len(self._queue)
        QUEUE_DEPTH.set(len(self._queue))
        logger.info(f"Queued {job.url} at position {position}", extra={"job_id": job.job_id, "channel_id": job.channel_id})
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self.drain())
        return position

    async def drain(self):
        if self._processing:
            return
        self._processing = True
        try:
            while self._queue:
                job = self._queue.popleft()
                QUEUE_DEPTH.set(len(self._queue))
                try:
                    await self.workflow.run(job)
                except Exception:
                    logger.error(f"Queue processing error for {job.url}", exc_info=True)
                logger.info(f"Cooling down for {self.cooldown:.0f}s before the next job")
                await self._sleep(self.cooldown)
        finally:
            self._processing = False

    async def join(self):
        """Wait until the worker has emptied the queue."""
        while self._worker is not None and not self._worker.done():
            await self._worker

# -----------------------------
# Link Intake
# -----------------------------
INSTAGRAM_LINK_RE = re.compile(
    r"(https?://(?:www\.)?instagram\.com/(?:p|reel|reels)/[\w-]+[^\s?>|]*)\S*(?:\s+(\d+))?(?:\s+([A-Za-z]+))?",
    re.IGNORECASE
)

@dataclass(frozen=True)
class LinkRequest:
    url: str
    requested_comments: Optional[int] = None
    language: Optional[str] = None

def normalize_instagram_url(url: str) -> str:
    """Drop query parameters and the trailing slash."""
    url = url.split("?", 1)[0]
    return url.rstrip("/")

def parse_link_request(text: str, supported: Optional[List[str]] = None) -> Optional[LinkRequest]:
    """
    A word straight after the link is a language only when it is supported.
    After a count, any word is taken as a language request.
    """
    match = INSTAGRAM_LINK_RE.search(text or "")
    if not match:
        return None
    supported = supported if supported is not None else settings.supported_languages
    url, count, word = match.groups()
    language = word.lower() if word else None
    if language and count is None and language not in supported:
        language = None
    return LinkRequest(
        url=normalize_instagram_url(url),
        requested_comments=int(count) if count else None,
        language=language
    )

def resolve_comment_count(
    requested: Optional[int],
    default: int = settings.default_comments,
    maximum: int = settings.max_comments
) -> Tuple[int, bool]:
    """Returns (count, rejected). Out-of-range requests fall back to the default."""
    if requested is None:
        return default, False
    if 1 <= requested <= maximum:
        return requested, False
    return default, True

def resolve_language(
    requested: Optional[str],
    supported: Optional[List[str]] = None,
    default: str = settings.default_language
) -> Tuple[str, bool]:
    supported = supported if supported is not None else settings.supported_languages
    if requested is None:
        return default, False
    if requested.lower() in supported:
        return requested.lower(), False
    return default, True

GREETING_RE = re.compile(r"\b(hello|hi|hey)\b", re.IGNORECASE)

class CommentBot:
    """Turns chat messages into queued comment jobs"""
    def __init__(self, queue: QueueManager, notifier, bot_user_id: Optional[str] = None):
        self.queue = queue
        self.notifier = notifier
        self.bot_user_id = bot_user_id

    async def handle_message(self, text: str, user_id: str, channel_id: str, thread_ts: str) -> Optional[Job]:
        request = parse_link_request(text)
        if request is None:
            await self._handle_chatter(text or "", user_id, channel_id, thread_ts)
            return None

        num_comments, rejected_count = resolve_comment_count(request.requested_comments)
        if rejected_count:
            await self.notifier.post_ephemeral(
                channel_id,
                user_id,
                f"Number must be between 1 and {settings.max_comments}. Using default {settings.default_comments} comments.",
                thread_ts
            )

        language, rejected_language = resolve_language(request.language)
        if rejected_language:
            await self.notifier.post_ephemeral(
                channel_id,
                user_id,
                f"I can't write comments in '{request.language}' yet. Supported languages: "
                f"{', '.join(settings.supported_languages)}. Using {language}.",
                thread_ts
            )

        job = Job(
            url=request.url,
            channel_id=channel_id,
            thread_id=thread_ts,
            requester_id=user_id,
            num_comments=num_comments,
            language=language
        )
        busy = self.queue.is_processing
        position = self.queue.enqueue(job)
        await self.notifier.post_ephemeral(channel_id, user_id, self._queue_message(user_id, position, busy), thread_ts)
        return job

    def _queue_message(self, user_id: str, position: int, busy: bool) -> str:
        message = f"<@{user_id}>: Your Instagram link has been added to the queue. "
        if position == 1 and not busy:
            return message + "I'll start processing it immediately! ⏱️"
        wait = round(position * self.queue.cooldown)
        return message + f"Position in queue: {position}. Estimated wait time: {wait} seconds."

    async def _handle_chatter(self, text: str, user_id: str, channel_id: str, thread_ts: str):
        lower_text = text.lower()
        if "status" in lower_text or "queue" in lower_text:
            pending = self.queue.pending()
            if not pending:
                status = "✅ No links in queue. Send me an Instagram link!"
            else:
                lines = [f"{i}. {job.url} ({job.num_comments} comments)" for i, job in enumerate(pending, start=1)]
                status = "📊 Current queue status:\n" + "\n".join(lines)
            await self.notifier.post_ephemeral(channel_id, user_id, status, thread_ts)
        elif "how are you" in lower_text:
            await self.notifier.post_message(
                channel_id,
                "Doing great, thanks for asking! 😊 Ready to generate comments whenever you send an Instagram link.",
                thread_ts
            )
        elif GREETING_RE.search(lower_text):
            await self.notifier.post_message(
                channel_id,
                f"Hey <@{user_id}>! 👋 Send me an Instagram link to generate comments "
                f"(add a number like \"link 5\" for a custom amount, or a language like \"link 5 spanish\").",
                thread_ts
            )

# -----------------------------
# Slack Wiring
# -----------------------------
IGNORED_SUBTYPES = {"bot_message", "message_changed", "message_deleted", "channel_join", "channel_leave"}

def build_app(http_client: httpx.AsyncClient) -> AsyncApp:
    app = AsyncApp(token=settings.slack_bot_token, signing_secret=settings.slack_signing_secret)
    notifier = SlackNotifier(app.client)
    fallback = GroqGenerator(settings.groq_api_key) if settings.groq_api_key else None
    workflow = CommentWorkflow(
        scraper=ApifyScraper(settings.apify_token, settings.scraper_actor, http_client),
        transcriber=DeepgramTranscriber(settings.deepgram_api_key, http_client),
        image_fetcher=HttpImageFetcher(http_client),
        generator=GeminiGenerator(settings.gemini_api_key, fallback=fallback),
        notifier=notifier
    )
    bot = CommentBot(QueueManager(workflow), notifier, bot_user_id=settings.slack_bot_user_id)

    @app.event("app_mention")
    async def on_mention(event):
        await bot.handle_message(event.get("text", ""), event["user"], event["channel"], event["ts"])

    @app.event("message")
    async def on_message(event, client):
        if event.get("subtype") in IGNORED_SUBTYPES:
            return
        if not bot.bot_user_id:
            try:
                auth = await client.auth_test()
                bot.bot_user_id = auth["user_id"]
                logger.info(f"Bot user ID fetched via API: {bot.bot_user_id}")
            except SlackApiError:
                logger.error("Failed to fetch bot user ID", exc_info=True)
                return
        text = event.get("text") or ""
        # Mentions are handled by the app_mention listener
        if f"<@{bot.bot_user_id}>" in text:
            return
        await bot.handle_message(text, event["user"], event["channel"], event["ts"])

    return app

async def main():
    parser = argparse.ArgumentParser(description="Instagram comment bot for Slack")
    parser.add_argument("--port", type=int, default=settings.port, help="Port for the Slack events endpoint")
    args = parser.parse_args()

    logger.info(f"Starting Instagram Comment Bot v{__version__}")
    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout) as http_client:
            app = build_app(http_client)
            runner = web.AppRunner(app.web_app(path="/slack/events", port=args.port))
            await runner.setup()
            site = web.TCPSite(runner, host="0.0.0.0", port=args.port)
            await site.start()
            logger.info(f"⚡️ Bolt app is listening on port {args.port}")
            try:
                await asyncio.Event().wait()
            finally:
                await runner.cleanup()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

if __name__ == "__main__":
    asyncio.run(main())
