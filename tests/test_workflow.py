import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock
from main import (
    CommentWorkflow, QueueManager, CommentBot, RetryExecutor, Job, JobStage,
    PostMetadata, ContentKind, FetchedImage, NotFoundError, FetchError, GenerationError,
    STILL_WORKING_NOTICE
)
from settings import settings

THREAD = "1700000000.000100"
NOTICE_HANDLE = "1700000000.000200"

def make_job(url="https://www.instagram.com/p/ABC123", num_comments=3, language="english"):
    return Job(
        url=url,
        channel_id="C123",
        thread_id=THREAD,
        requester_id="U123",
        num_comments=num_comments,
        language=language
    )

@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.post_ephemeral = AsyncMock(return_value=NOTICE_HANDLE)
    notifier.post_message = AsyncMock()
    notifier.delete_message = AsyncMock()
    return notifier

@pytest.fixture
def services():
    scraper = MagicMock()
    scraper.scrape = AsyncMock(return_value=PostMetadata(
        caption="sunset",
        content_kind=ContentKind.VIDEO,
        video_url="https://cdn.example.com/v.mp4",
        owner_name="Maria Lopez"
    ))
    transcriber = MagicMock()
    transcriber.transcribe = AsyncMock(return_value="people cheering")
    image_fetcher = MagicMock()
    image_fetcher.fetch = AsyncMock(return_value=FetchedImage(b"\xff\xd8", "image/jpeg"))
    generator = MagicMock()
    generator.generate = AsyncMock(return_value="What a sky\n\nThat crowd 🙌🙌🙌\n\nGolden hour done right")
    return scraper, transcriber, image_fetcher, generator

def make_workflow(services, notifier, warning_delay=60.0):
    scraper, transcriber, image_fetcher, generator = services
    return CommentWorkflow(
        scraper=scraper,
        transcriber=transcriber,
        image_fetcher=image_fetcher,
        generator=generator,
        notifier=notifier,
        retry=RetryExecutor(max_attempts=3, initial_delay=0),
        warning_delay=warning_delay
    )

# -----------------------------
# Job Pipeline
# -----------------------------
def test_video_post_full_run(services, notifier):
    workflow = make_workflow(services, notifier)
    _, transcriber, image_fetcher, generator = services

    outcome = asyncio.run(workflow.run(make_job()))

    assert outcome is JobStage.DONE
    transcriber.transcribe.assert_awaited_once_with("https://cdn.example.com/v.mp4")
    image_fetcher.fetch.assert_not_awaited()
    prompt = generator.generate.call_args.args[0]
    assert "sunset" in prompt.text
    assert "people cheering" in prompt.text

    notifier.post_message.assert_awaited_once()
    channel, text, thread = notifier.post_message.call_args.args
    assert (channel, thread) == ("C123", THREAD)
    assert text == "What a sky\n\nThat crowd 🙌🙌🙌\n\nGolden hour done right"
    notifier.delete_message.assert_awaited_once_with("C123", NOTICE_HANDLE)

def test_not_found_posts_single_error_reply(services, notifier):
    scraper, transcriber, _, generator = services
    scraper.scrape.side_effect = NotFoundError("Post not found or inaccessible by Apify.")
    workflow = make_workflow(services, notifier)

    outcome = asyncio.run(workflow.run(make_job()))

    assert outcome is JobStage.FAILED
    assert scraper.scrape.await_count == 1
    transcriber.transcribe.assert_not_awaited()
    generator.generate.assert_not_awaited()
    notifier.post_message.assert_awaited_once()
    text = notifier.post_message.call_args.args[1]
    assert "private or unavailable" in text
    assert "Post not found or inaccessible by Apify." in text
    notifier.delete_message.assert_awaited_once_with("C123", NOTICE_HANDLE)

def test_image_fetch_failure_degrades_to_caption_only(services, notifier):
    scraper, _, image_fetcher, generator = services
    scraper.scrape.return_value = PostMetadata(
        caption="beach day",
        content_kind=ContentKind.IMAGE,
        display_url="https://cdn.example.com/d.jpg"
    )
    image_fetcher.fetch.side_effect = FetchError("Failed to fetch image: 403")
    workflow = make_workflow(services, notifier)

    outcome = asyncio.run(workflow.run(make_job()))

    assert outcome is JobStage.DONE
    assert image_fetcher.fetch.await_count == 3
    prompt = generator.generate.call_args.args[0]
    assert not prompt.has_image
    assert len(prompt.parts) == 1
    assert "beach day" in prompt.text
    notifier.post_message.assert_awaited_once()

def test_carousel_post_sends_image_part(services, notifier):
    scraper, transcriber, image_fetcher, generator = services
    scraper.scrape.return_value = PostMetadata(
        caption="team dinner",
        content_kind=ContentKind.CAROUSEL,
        display_url="https://cdn.example.com/d.jpg"
    )
    workflow = make_workflow(services, notifier)

    assert asyncio.run(workflow.run(make_job())) is JobStage.DONE

    image_fetcher.fetch.assert_awaited_once_with("https://cdn.example.com/d.jpg")
    transcriber.transcribe.assert_not_awaited()
    prompt = generator.generate.call_args.args[0]
    assert prompt.parts[1].image.mime_type == "image/jpeg"

def test_unknown_post_kind_uses_caption_only(services, notifier):
    scraper, transcriber, image_fetcher, generator = services
    scraper.scrape.return_value = PostMetadata.model_validate({"caption": "new drop", "type": "Story"})
    workflow = make_workflow(services, notifier)

    assert asyncio.run(workflow.run(make_job())) is JobStage.DONE
    transcriber.transcribe.assert_not_awaited()
    image_fetcher.fetch.assert_not_awaited()
    assert "new drop" in generator.generate.call_args.args[0].text

def test_generation_failure_is_reported_after_retries(services, notifier):
    _, _, _, generator = services
    generator.generate.side_effect = GenerationError("Gemini generation error: quota")
    workflow = make_workflow(services, notifier)

    outcome = asyncio.run(workflow.run(make_job()))

    assert outcome is JobStage.FAILED
    assert generator.generate.await_count == 3
    text = notifier.post_message.call_args.args[1]
    assert "Our comment system had an issue." in text
    assert "generate failed after 3 attempts" in text

def test_blank_generator_output_fails_job(services, notifier):
    _, _, _, generator = services
    generator.generate.return_value = "  \n\n  "
    workflow = make_workflow(services, notifier)

    assert asyncio.run(workflow.run(make_job())) is JobStage.FAILED
    notifier.post_message.assert_awaited_once()

def test_timeout_warning_fires_for_slow_jobs(services, notifier):
    _, _, _, generator = services

    async def slow_generate(prompt):
        await asyncio.sleep(0.1)
        return "one\n\ntwo"

    generator.generate.side_effect = slow_generate
    workflow = make_workflow(services, notifier, warning_delay=0.01)

    assert asyncio.run(workflow.run(make_job())) is JobStage.DONE
    texts = [call.args[2] for call in notifier.post_ephemeral.call_args_list]
    assert texts.count(STILL_WORKING_NOTICE) == 1

def test_timeout_warning_cancelled_on_completion(services, notifier):
    workflow = make_workflow(services, notifier, warning_delay=0.05)

    async def scenario():
        outcome = await workflow.run(make_job())
        await asyncio.sleep(0.1)
        return outcome

    assert asyncio.run(scenario()) is JobStage.DONE
    texts = [call.args[2] for call in notifier.post_ephemeral.call_args_list]
    assert STILL_WORKING_NOTICE not in texts

def test_timeout_warning_cancelled_on_failure(services, notifier):
    scraper = services[0]
    scraper.scrape.side_effect = NotFoundError("gone")
    workflow = make_workflow(services, notifier, warning_delay=0.05)

    async def scenario():
        outcome = await workflow.run(make_job())
        await asyncio.sleep(0.1)
        return outcome

    assert asyncio.run(scenario()) is JobStage.FAILED
    texts = [call.args[2] for call in notifier.post_ephemeral.call_args_list]
    assert STILL_WORKING_NOTICE not in texts

def test_notice_failures_are_not_fatal(services, notifier):
    notifier.post_ephemeral.side_effect = Exception("ratelimited")
    workflow = make_workflow(services, notifier)

    assert asyncio.run(workflow.run(make_job())) is JobStage.DONE
    notifier.post_message.assert_awaited_once()
    notifier.delete_message.assert_not_awaited()

def test_notice_delete_failure_is_not_fatal(services, notifier):
    notifier.delete_message.side_effect = Exception("message_not_found")
    workflow = make_workflow(services, notifier)

    assert asyncio.run(workflow.run(make_job())) is JobStage.DONE
    notifier.post_message.assert_awaited_once()

# -----------------------------
# Queue Manager
# -----------------------------
class RecordingWorkflow:
    def __init__(self, events, failing_urls=()):
        self.events = events
        self.failing_urls = set(failing_urls)
        self.active = 0
        self.max_active = 0

    async def run(self, job):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", job.url))
        await asyncio.sleep(0)
        self.events.append(("end", job.url))
        self.active -= 1
        if job.url in self.failing_urls:
            raise RuntimeError("pipeline blew up")
        return JobStage.DONE

def make_sleep(events):
    async def fake_sleep(seconds):
        events.append(("cooldown", seconds))
        await asyncio.sleep(0)
    return fake_sleep

def test_queue_is_fifo_with_cooldown_between_jobs():
    events = []
    workflow = RecordingWorkflow(events)
    urls = ["https://www.instagram.com/p/A", "https://www.instagram.com/p/B", "https://www.instagram.com/p/C"]

    async def scenario():
        queue = QueueManager(workflow, cooldown=15, sleep=make_sleep(events))
        positions = [queue.enqueue(make_job(url)) for url in urls]
        await queue.join()
        return queue, positions

    queue, positions = asyncio.run(scenario())

    assert positions == [1, 2, 3]
    assert events == [
        ("start", urls[0]), ("end", urls[0]), ("cooldown", 15),
        ("start", urls[1]), ("end", urls[1]), ("cooldown", 15),
        ("start", urls[2]), ("end", urls[2]), ("cooldown", 15),
    ]
    assert workflow.max_active == 1
    assert not queue.is_processing
    assert len(queue) == 0

def test_second_job_waits_for_first_and_cooldown():
    events = []
    workflow = RecordingWorkflow(events)

    async def scenario():
        queue = QueueManager(workflow, cooldown=15, sleep=make_sleep(events))
        queue.enqueue(make_job("https://www.instagram.com/p/FIRST"))
        await asyncio.sleep(0)
        assert queue.is_processing
        assert queue.enqueue(make_job("https://www.instagram.com/p/SECOND")) == 1
        await queue.join()

    asyncio.run(scenario())

    second_start = events.index(("start", "https://www.instagram.com/p/SECOND"))
    assert events[second_start - 1] == ("cooldown", 15)
    assert events.index(("end", "https://www.instagram.com/p/FIRST")) < second_start

def test_pipeline_failure_does_not_stop_draining():
    events = []
    workflow = RecordingWorkflow(events, failing_urls=["https://www.instagram.com/p/BAD"])

    async def scenario():
        queue = QueueManager(workflow, cooldown=15, sleep=make_sleep(events))
        queue.enqueue(make_job("https://www.instagram.com/p/BAD"))
        queue.enqueue(make_job("https://www.instagram.com/p/GOOD"))
        await queue.join()

    asyncio.run(scenario())

    assert ("end", "https://www.instagram.com/p/GOOD") in events
    assert events.count(("cooldown", 15)) == 2

def test_queue_continues_after_not_found_job(services, notifier):
    scraper = services[0]
    video_post = scraper.scrape.return_value

    async def scrape(url):
        if url.endswith("MISSING"):
            raise NotFoundError("Post not found or inaccessible by Apify.")
        return video_post

    scraper.scrape.side_effect = scrape
    workflow = make_workflow(services, notifier)
    cooldowns = []

    async def fake_sleep(seconds):
        cooldowns.append(seconds)

    async def scenario():
        queue = QueueManager(workflow, cooldown=15, sleep=fake_sleep)
        queue.enqueue(make_job("https://www.instagram.com/p/MISSING"))
        queue.enqueue(make_job("https://www.instagram.com/p/PRESENT"))
        await queue.join()

    asyncio.run(scenario())

    replies = [call.args[1] for call in notifier.post_message.call_args_list]
    assert len(replies) == 2
    assert "private or unavailable" in replies[0]
    assert replies[1].startswith("What a sky")
    assert cooldowns == [15, 15]

# -----------------------------
# Link Intake
# -----------------------------
def make_bot(notifier):
    workflow = MagicMock()
    workflow.run = AsyncMock(return_value=JobStage.DONE)
    queue = QueueManager(workflow, cooldown=15, sleep=AsyncMock())
    return CommentBot(queue, notifier), workflow

@pytest.mark.parametrize("count", ["0", str(settings.max_comments + 5)])
def test_out_of_range_count_uses_default_with_warning(notifier, count):
    bot, workflow = make_bot(notifier)

    async def scenario():
        job = await bot.handle_message(f"<https://www.instagram.com/p/ABC123/> {count}", "U1", "C1", THREAD)
        await bot.queue.join()
        return job

    job = asyncio.run(scenario())

    assert job.num_comments == settings.default_comments
    texts = [call.args[2] for call in notifier.post_ephemeral.call_args_list]
    assert any(f"Number must be between 1 and {settings.max_comments}" in t for t in texts)
    workflow.run.assert_awaited_once_with(job)

def test_link_with_count_and_language_is_queued(notifier):
    bot, workflow = make_bot(notifier)

    async def scenario():
        job = await bot.handle_message("https://www.instagram.com/reel/XyZ/?igsh=1 10 spanish", "U1", "C1", THREAD)
        await bot.queue.join()
        return job

    job = asyncio.run(scenario())

    assert job.url == "https://www.instagram.com/reel/XyZ"
    assert job.num_comments == 10
    assert job.language == "spanish"
    assert (job.channel_id, job.thread_id, job.requester_id) == ("C1", THREAD, "U1")
    texts = [call.args[2] for call in notifier.post_ephemeral.call_args_list]
    assert texts == ["<@U1>: Your Instagram link has been added to the queue. I'll start processing it immediately! ⏱️"]

def test_trailing_chatter_is_not_a_language(notifier):
    bot, _ = make_bot(notifier)

    async def scenario():
        job = await bot.handle_message("https://www.instagram.com/p/ABC123/ please", "U1", "C1", THREAD)
        await bot.queue.join()
        return job

    job = asyncio.run(scenario())

    assert job.language == settings.default_language
    texts = [call.args[2] for call in notifier.post_ephemeral.call_args_list]
    assert not any("I can't write comments in" in t for t in texts)

def test_unsupported_language_after_count_is_flagged(notifier):
    bot, _ = make_bot(notifier)

    async def scenario():
        job = await bot.handle_message("https://www.instagram.com/p/ABC123/ 8 klingon", "U1", "C1", THREAD)
        await bot.queue.join()
        return job

    job = asyncio.run(scenario())

    assert job.num_comments == 8
    assert job.language == settings.default_language
    texts = [call.args[2] for call in notifier.post_ephemeral.call_args_list]
    assert any("I can't write comments in 'klingon'" in t for t in texts)

def test_status_lists_pending_jobs(notifier):
    bot, _ = make_bot(notifier)

    async def scenario():
        await bot.handle_message("status please", "U1", "C1", THREAD)

    asyncio.run(scenario())

    notifier.post_ephemeral.assert_awaited_once()
    assert "No links in queue" in notifier.post_ephemeral.call_args.args[2]

def test_plain_chatter_is_ignored(notifier):
    bot, workflow = make_bot(notifier)

    assert asyncio.run(bot.handle_message("lunch at noon?", "U1", "C1", THREAD)) is None
    notifier.post_ephemeral.assert_not_awaited()
    notifier.post_message.assert_not_awaited()
    workflow.run.assert_not_awaited()
