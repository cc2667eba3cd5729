"""OpenAI client configuration for invoice extraction."""

import os
from functools import lru_cache

from dotenv import load_dotenv
from openai import OpenAI

load_dotenv()

INVOICE_EXTRACTION_MODEL = os.getenv("INVOICE_EXTRACTION_MODEL", "gpt-4.1-mini")
INVOICE_VISION_MODEL = os.getenv("INVOICE_VISION_MODEL", "gpt-4o-mini")


@lru_cache(maxsize=1)
def get_openai_client() -> OpenAI:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY manquante dans le fichier .env")
    return OpenAI(api_key=api_key)


__all__ = ["get_openai_client", "INVOICE_EXTRACTION_MODEL", "INVOICE_VISION_MODEL"]
