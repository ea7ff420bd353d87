"""Catalog of selectable models and the provider that serves each one."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Provider = Literal["groq", "google"]

PROVIDERS: tuple[Provider, ...] = ("groq", "google")


@dataclass(frozen=True)
class ModelInfo:
    """A selectable model and its serving provider."""

    id: str
    name: str
    provider: Provider
    description: str = ""
    recommended: bool = False
    supports_vision: bool = False


AVAILABLE_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="llama-3.3-70b-versatile",
        name="Llama 3.3 70B Versatile",
        provider="groq",
        description="Balanced quality and speed for general chat.",
        recommended=True,
    ),
    ModelInfo(
        id="llama-3.1-8b-instant",
        name="Llama 3.1 8B Instant",
        provider="groq",
        description="Lowest latency for short answers.",
    ),
    ModelInfo(
        id="meta-llama/llama-4-scout-17b-16e-instruct",
        name="Llama 4 Scout",
        provider="groq",
        description="Multimodal model with image understanding.",
        supports_vision=True,
    ),
    ModelInfo(
        id="meta-llama/llama-4-maverick-17b-128e-instruct",
        name="Llama 4 Maverick",
        provider="groq",
        description="Larger multimodal mixture-of-experts model.",
        supports_vision=True,
    ),
    ModelInfo(
        id="deepseek-r1-distill-llama-70b",
        name="DeepSeek R1 Distill Llama 70B",
        provider="groq",
        description="Reasoning-tuned distillation.",
    ),
    ModelInfo(
        id="gemini-2.0-flash",
        name="Gemini 2.0 Flash",
        provider="google",
        description="Fast multimodal model from Google.",
        supports_vision=True,
    ),
    ModelInfo(
        id="gemini-1.5-pro",
        name="Gemini 1.5 Pro",
        provider="google",
        description="Long-context multimodal model.",
        supports_vision=True,
    ),
    ModelInfo(
        id="gemini-1.5-flash",
        name="Gemini 1.5 Flash",
        provider="google",
        supports_vision=True,
    ),
)


def get_model(model_id: str, catalog: tuple[ModelInfo, ...] = AVAILABLE_MODELS) -> ModelInfo | None:
    normalized = model_id.strip()
    for info in catalog:
        if info.id == normalized:
            return info
    return None


def get_recommended_model(catalog: tuple[ModelInfo, ...] = AVAILABLE_MODELS) -> ModelInfo:
    for info in catalog:
        if info.recommended:
            return info
    return catalog[0]
