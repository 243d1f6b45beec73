import logging

from chatpipe.configs.models import (
    DEFAULT_MODEL_ID,
    DEFAULT_VISION_MODEL_ID,
    ModelConfig,
)
from chatpipe.core.errors import ErrorCode, PipelineError
from chatpipe.core.pipeline.context import Message
from chatpipe.infra.logging import sanitize_for_log

logger = logging.getLogger(__name__)


def has_images(messages: list[Message]) -> bool:
    return any(m.image_blocks() for m in messages)


class ModelSelector:
    """Resolve the requested model against the registry.

    Unknown ids fall back to the default model.  A known model without
    vision is swapped for the default vision model when the conversation
    carries images.  Custom agents are trusted as sent.
    """

    def __init__(
        self,
        registry: dict[str, ModelConfig],
        default_model_id: str = DEFAULT_MODEL_ID,
        vision_model_id: str = DEFAULT_VISION_MODEL_ID,
    ) -> None:
        self._registry = registry
        self._default_model_id = default_model_id
        self._vision_model_id = vision_model_id

    def is_valid_model(self, model_id: str) -> bool:
        return model_id in self._registry

    def supports_vision(self, model_id: str) -> bool:
        model = self._registry.get(model_id)
        return bool(model and model.vision)

    def select_model(
        self, requested: ModelConfig, messages: list[Message]
    ) -> tuple[str, ModelConfig]:
        if requested.is_custom_agent:
            return requested.id, requested

        model_id = requested.id
        if not self.is_valid_model(model_id):
            model_id = self._default_model_id
            logger.info(
                "Invalid model %s, falling back to %s",
                sanitize_for_log(requested.id),
                model_id,
            )
        elif has_images(messages) and not self.supports_vision(model_id):
            model_id = self._vision_model_id
            logger.info(
                "Image detected, upgrading %s to %s for vision support",
                requested.id,
                model_id,
            )

        model = self._registry.get(model_id)
        if model is None:
            raise PipelineError.critical(
                f"Model configuration not found for: {model_id}",
                ErrorCode.MODEL_CONFIG_INVALID,
            )
        return model_id, model
