"""
Logging of text-generation interactions.

Requests, responses (length, tokens, duration) and errors are written to
the ``gradetags.llm`` logger, with a dedicated rotating file when LLM
logging and file logging are both enabled.
"""

import json
import logging
import logging.handlers
import time
from datetime import datetime, timezone

from gradetags.config import settings
from gradetags.taxonomy.providers.base import LLMResponse

logger = logging.getLogger(__name__)


class LLMLogger:
    """Logger for text-generation calls made by the taxonomy jobs."""

    def __init__(self):
        self.llm_logger = logging.getLogger("gradetags.llm")
        self.enabled = settings.llm_logging_enabled
        self._file_handler_ready = False

    def _ensure_file_handler(self) -> None:
        """Attach the rotating ``llm/requests.log`` handler on first use."""
        if self._file_handler_ready or not settings.log_file_enabled:
            return

        llm_dir = settings.log_directory / "llm"
        llm_dir.mkdir(parents=True, exist_ok=True)

        handler = logging.handlers.RotatingFileHandler(
            llm_dir / "requests.log",
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(
            logging.Formatter(
                fmt="[%(asctime)s] [%(levelname)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        self.llm_logger.addHandler(handler)
        self.llm_logger.setLevel(logging.INFO)
        self.llm_logger.propagate = False
        self._file_handler_ready = True

    def log_request(
        self,
        job: str,
        scope: str,
        model: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        """
        Log a request before it is sent.

        Args:
            job: Job name (clustering, merge, ability)
            scope: Owner/assignment the call is for
            model: Model identifier
            prompt: User prompt text
            max_tokens: Maximum tokens requested
            temperature: Temperature parameter

        Returns:
            str: Request ID for correlating with the response
        """
        request_id = f"{job}_{scope}_{int(time.time() * 1000)}"
        if not self.enabled:
            return request_id
        self._ensure_file_handler()

        log_entry = {
            "type": "request",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "parameters": {"max_tokens": max_tokens, "temperature": temperature},
            "prompt_length": len(prompt),
        }
        if settings.llm_log_prompts:
            log_entry["prompt"] = prompt
        else:
            log_entry["prompt_preview"] = (
                prompt[:500] + "..." if len(prompt) > 500 else prompt
            )

        self.llm_logger.info(f"REQUEST: {json.dumps(log_entry, ensure_ascii=False)}")
        return request_id

    def log_response(self, request_id: str, response: LLMResponse) -> None:
        if not self.enabled:
            return
        self._ensure_file_handler()

        content = response.content or ""
        log_entry = {
            "type": "response",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": response.model,
            "finish_reason": response.finish_reason,
            "content_length": len(content),
            "duration_ms": round(response.duration_ms, 2),
            "tokens": {
                "prompt": response.prompt_tokens,
                "completion": response.completion_tokens,
                "total": response.total_tokens,
            },
            "content_preview": content[:200] + "..." if len(content) > 200 else content,
        }
        self.llm_logger.info(f"RESPONSE: {json.dumps(log_entry, ensure_ascii=False)}")

    def log_error(self, request_id: str, error: Exception) -> None:
        if not self.enabled:
            return
        self._ensure_file_handler()

        log_entry = {
            "type": "error",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error_type": type(error).__name__,
            "error_message": str(error),
        }
        self.llm_logger.error(f"ERROR: {json.dumps(log_entry, ensure_ascii=False)}")


# Global LLM logger instance
llm_logger = LLMLogger()
