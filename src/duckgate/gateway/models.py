"""Catalog of upstream models exposed through /v1/models."""

DEFAULT_MODEL = "mistralai/Mistral-Small-24B-Instruct-2501"

AVAILABLE_MODELS = (
    "gpt-4o-mini",
    "o3-mini",
    "claude-3-haiku-20240307",
    "meta-llama/Llama-3.3-70B-Instruct-Turbo",
    DEFAULT_MODEL,
)

OWNED_BY = "duckai"
