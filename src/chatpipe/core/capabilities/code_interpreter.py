"""Code-interpreter agent streams.

Executed code and its logs are rendered straight into the text as
markdown fences.  Generated images get an inline placeholder the client
resolves; generated files are only reported in the metadata block.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from chatpipe.core.stream.metadata import (
    CodeInterpreterMetadata,
    CodeInterpreterOutput,
    StreamMetadata,
    format_metadata,
)

from .events import (
    EVENT_DONE,
    EVENT_ERROR,
    EVENT_MESSAGE_COMPLETED,
    EVENT_MESSAGE_DELTA,
    EVENT_RUN_COMPLETED,
    EVENT_STEP_DELTA,
    AgentEvent,
    AgentStreamContext,
    AgentStreamError,
    completed_annotations,
    delta_texts,
)

IMAGE_MIME_TYPE = "image/png"


def _code_interpreter_calls(data: dict[str, Any]) -> list[dict[str, Any]]:
    details = (data.get("delta") or {}).get("step_details") or {}
    return [
        call.get("code_interpreter") or {}
        for call in details.get("tool_calls") or []
        if call.get("type") == "code_interpreter"
    ]


async def code_interpreter_stream(
    events: AsyncIterable[AgentEvent],
    context: AgentStreamContext,
) -> AsyncIterator[str]:
    code: list[str] = []
    outputs: list[CodeInterpreterOutput] = []
    metadata = CodeInterpreterMetadata(uploaded_files=list(context.uploaded_files))

    async for event in events:
        if event.event == EVENT_MESSAGE_DELTA:
            for text in delta_texts(event.data):
                yield text

        elif event.event == EVENT_STEP_DELTA:
            for call in _code_interpreter_calls(event.data):
                if call.get("input"):
                    code.append(call["input"])
                    yield f"\n```python\n{call['input']}"
                for output in call.get("outputs") or []:
                    if output.get("type") == "logs" and output.get("logs"):
                        outputs.append(
                            CodeInterpreterOutput(type="logs", content=output["logs"])
                        )
                        yield f"\n```\n\n**Output:**\n```\n{output['logs']}\n```\n"
                    elif output.get("type") == "image":
                        file_id = (output.get("image") or {}).get("file_id")
                        if file_id:
                            outputs.append(
                                CodeInterpreterOutput(
                                    type="image",
                                    file_id=file_id,
                                    mime_type=IMAGE_MIME_TYPE,
                                )
                            )
                            yield (
                                "\n\n![Generated Image]"
                                f"(code_interpreter:{file_id})\n"
                            )

        elif event.event == EVENT_MESSAGE_COMPLETED:
            for annotation in completed_annotations(event.data):
                file_id = (annotation.get("file_path") or {}).get("file_id")
                if annotation.get("type") == "file_path" and file_id:
                    outputs.append(
                        CodeInterpreterOutput(
                            type="file",
                            file_id=file_id,
                            filename=annotation.get("text") or "generated_file",
                        )
                    )
            metadata = metadata.model_copy(
                update={
                    "execution_phase": "completed",
                    "code": "".join(code) or None,
                    "outputs": list(outputs),
                }
            )

        elif event.event == EVENT_RUN_COMPLETED:
            metadata = metadata.model_copy(
                update={
                    "execution_phase": "completed",
                    "code": "".join(code) or None,
                    "outputs": list(outputs),
                    "duration_ms": int(
                        (time.monotonic() - context.started_at) * 1000
                    ),
                }
            )
            yield format_metadata(
                StreamMetadata(
                    thread_id=context.new_thread_id,
                    code_interpreter=metadata,
                )
            )

        elif event.event == EVENT_ERROR:
            raise AgentStreamError(f"Code Interpreter error: {event.describe()}")

        elif event.event == EVENT_DONE:
            break
