"""One-shot probe that classifies a model's tool-calling dialect."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from .ai_types import Dialect
from .request_builder import backend_endpoint

LOGGER = logging.getLogger(__name__)

_TEMPLATE_MARKERS = ("tool", "function")
_MODELFILE_MARKERS = ("tool", "function_call")
_DETAIL_MARKERS = ("tool", "function")


@dataclass(slots=True)
class CapabilityReport:
    model: str
    dialect: Dialect
    model_info: Mapping[str, Any] = field(default_factory=dict)


def classify_model_info(model_info: Mapping[str, Any]) -> Dialect:
    """Inspect ``/api/show`` output for tool-calling markers."""

    modelfile = str(model_info.get("modelfile") or "").lower()
    template = str(model_info.get("template") or "").lower()
    details = model_info.get("details")
    details_text = json.dumps(details, ensure_ascii=False).lower() if details else ""

    if any(marker in modelfile for marker in _MODELFILE_MARKERS):
        return Dialect.NATIVE
    if any(marker in template for marker in _TEMPLATE_MARKERS):
        return Dialect.NATIVE
    if any(marker in details_text for marker in _DETAIL_MARKERS):
        return Dialect.NATIVE
    return Dialect.PROMPT_INJECTED


class CapabilityDetector:
    """Queries model metadata once and reports the dialect requests should use."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_url: str,
        timeout: float = 30.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._client = client
        self._api_url = api_url
        self._timeout = timeout
        self._headers = dict(headers or {})

    @property
    def show_url(self) -> str:
        return backend_endpoint(self._api_url, "/api/show")

    async def detect(self, model: str) -> CapabilityReport:
        """Return the dialect for *model*; failures degrade to ``Dialect.UNKNOWN``."""

        url = self.show_url
        LOGGER.info("Querying model capabilities from %s for model %s", url, model)
        try:
            response = await self._client.post(
                url,
                json={"name": model},
                headers={"Content-Type": "application/json", **self._headers},
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            LOGGER.warning("Failed to query model capabilities: %s", exc)
            return CapabilityReport(model=model, dialect=Dialect.UNKNOWN)
        except ValueError as exc:
            LOGGER.error("Failed to parse model info: %s", exc)
            return CapabilityReport(model=model, dialect=Dialect.UNKNOWN)

        if not isinstance(payload, Mapping):
            LOGGER.error("Model info response is not a JSON object")
            return CapabilityReport(model=model, dialect=Dialect.UNKNOWN)

        dialect = classify_model_info(payload)
        if dialect is Dialect.NATIVE:
            LOGGER.info("Model %s supports native tool calling", model)
        else:
            LOGGER.info("Model %s uses prompt-injected tool calling", model)
        return CapabilityReport(model=model, dialect=dialect, model_info=dict(payload))


__all__ = ["CapabilityDetector", "CapabilityReport", "classify_model_info"]
