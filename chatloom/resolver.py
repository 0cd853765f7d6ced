"""Picks a usable model from the configured default/fallback pair."""

import logging

import openai
from openai import OpenAI

from chatloom.errors import CatalogFetchFailed, ModelUnavailable
from chatloom.models import Model, ModelsList


def resolve(available_model_ids: set[str], default: Model, fallback: Model) -> Model:
    """Returns default if the account can use it, else fallback, else raises."""
    if not available_model_ids:
        raise CatalogFetchFailed("The model catalog is empty.")
    if default.name in available_model_ids:
        return default
    if fallback.name in available_model_ids:
        logging.warning(
            f"Model '{default.name}' is unavailable, falling back to '{fallback.name}'."
        )
        return fallback
    raise ModelUnavailable(default.name, fallback.name)


def fetch_catalog(client: OpenAI) -> set[str]:
    """Lists the model ids the API account can access."""
    try:
        return {model.id for model in client.models.list()}
    except openai.OpenAIError as e:
        raise CatalogFetchFailed(f"Failed to fetch the list of available models: {e}") from e


def select_model(client: OpenAI, models: ModelsList) -> Model:
    """Fetches the catalog and resolves the configured pair against it."""
    return resolve(fetch_catalog(client), models.default, models.fallback)
