"""Tests for final message assembly."""

import pytest

from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.handlers.messages import (
    EMPTY_CONTENT_PLACEHOLDER,
    FAILURE_MESSAGES,
    build_final_messages,
    failure_message,
    is_transcript_only,
    merge_processed_content,
    strip_internal_blocks,
    transcript_metadata,
)
from chatpipe.core.pipeline.context import (
    ImageUrl,
    ImageUrlBlock,
    InlineFile,
    Message,
    ProcessedContent,
    TextBlock,
    Transcript,
)
from chatpipe.core.stream.metadata import PendingTranscription

DATA_URL = "data:image/png;base64,iVBORw=="


def _file_error(reason: str) -> PipelineError:
    return PipelineError.error(
        "could not process", ErrorCode.TRANSCRIPTION_FAILED, details={"reason": reason}
    )


class TestFailureMessage:
    @pytest.mark.parametrize("reason", ["no_audio_track", "ffmpeg_unavailable"])
    def test_known_reason(self, reason):
        assert failure_message([_file_error(reason)]) == FAILURE_MESSAGES[reason]

    def test_first_known_reason_wins(self):
        errors = [_file_error("generic"), _file_error("ffmpeg_unavailable")]
        assert failure_message(errors) == FAILURE_MESSAGES["ffmpeg_unavailable"]

    def test_unknown_reason_is_generic(self):
        assert failure_message([_file_error("disk_full")]) == FAILURE_MESSAGES["generic"]


class TestTranscriptOnly:
    @pytest.mark.parametrize(
        "content, expected",
        [
            ("", True),
            ("[Audio/Video: talk.mp3]", True),
            ("  [talk.mp3]  ", True),
            ("What is said in this recording?", False),
            ("[talk.mp3] summarise please", False),
        ],
    )
    def test_label_detection(self, content, expected):
        assert is_transcript_only(Message(role="user", content=content)) is expected

    def test_uses_first_text_block(self):
        message = Message.model_validate(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "[Audio/Video: a.mp3]"},
                    {"type": "file_url", "url": "https://blob/a.mp3"},
                ],
            }
        )
        assert is_transcript_only(message)


class TestTranscriptMetadata:
    def test_none_without_transcripts(self):
        assert transcript_metadata(ProcessedContent()) is None

    def test_job_id_from_pending(self):
        processed = ProcessedContent(
            transcripts=[Transcript(filename="a.mp3", transcript="hi")],
            pending_transcriptions=[PendingTranscription(filename="a.mp3", job_id="tj_1")],
        )
        metadata = transcript_metadata(processed)
        assert (metadata.filename, metadata.transcript, metadata.job_id) == ("a.mp3", "hi", "tj_1")


class TestMergeProcessedContent:
    def test_nothing_to_merge(self):
        message = Message(role="user", content="hi")
        assert merge_processed_content(message, ProcessedContent()) is message

    def test_pending_jobs_alone_leave_message_untouched(self):
        message = Message(role="user", content="hi")
        processed = ProcessedContent(
            pending_transcriptions=[PendingTranscription(filename="a.mp3", job_id="tj_1")]
        )
        assert processed.is_empty()
        assert merge_processed_content(message, processed) is message

    def test_sections_appended_and_files_dropped(self):
        message = Message.model_validate(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Compare"},
                    {"type": "file_url", "url": "https://blob/n.txt"},
                ],
            }
        )
        processed = ProcessedContent(
            inline_files=[InlineFile(filename="n.txt", content="notes")],
            transcripts=[Transcript(filename="t.mp3", transcript="words")],
        )
        merged = merge_processed_content(message, processed)
        assert merged.content == "Compare\n\n```n.txt\nnotes\n```\n\n[Audio/Video: t.mp3]\nwords"

    def test_images_replaced_in_order(self):
        message = Message.model_validate(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What is this?"},
                    {"type": "image_url", "image_url": {"url": "https://blob/p.png"}},
                ],
            }
        )
        inlined = ImageUrlBlock(image_url=ImageUrl(url=DATA_URL))
        merged = merge_processed_content(message, ProcessedContent(images=[inlined]))
        assert merged.content == [TextBlock(text="What is this?"), inlined]

    def test_text_skipped_when_already_injected(self):
        message = Message(role="user", content="q")
        processed = ProcessedContent(inline_files=[InlineFile(filename="a", content="b")])
        assert merge_processed_content(message, processed, include_text=False) is message


class TestStripInternalBlocks:
    def test_file_only_message_gets_placeholder(self):
        message = Message.model_validate(
            {"role": "user", "content": [{"type": "file_url", "url": "https://blob/x"}]}
        )
        assert strip_internal_blocks([message])[0].content == EMPTY_CONTENT_PLACEHOLDER

    def test_single_text_block_collapses(self):
        message = Message.model_validate(
            {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "hmm"},
                    {"type": "text", "text": "answer"},
                ],
            }
        )
        assert strip_internal_blocks([message])[0].content == "answer"


def test_build_final_messages_respects_injection(make_context):
    processed = ProcessedContent(
        inline_files=[InlineFile(filename="a.txt", content="alpha")],
        metadata={"content_injected": True},
    )
    context = make_context("question", processed_content=processed)
    assert build_final_messages(context)[-1].content == "question"

    context = make_context("question", processed_content=processed.merge_metadata({"content_injected": False}))
    assert build_final_messages(context)[-1].content == "question\n\n```a.txt\nalpha\n```"
