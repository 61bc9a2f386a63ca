#!/usr/bin/env python3
"""List the embedding models available to the configured provider.

Usage:
    python scripts/list_models.py
"""

import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))
for env_name in (".env.local", ".env"):
    env_path = backend_dir / env_name
    if env_path.exists():
        load_dotenv(env_path)


async def main() -> int:
    from christy.core.config import get_settings
    from christy.knowledge.errors import ConfigurationError, ProviderError
    from christy.knowledge.providers import create_embedding_provider

    settings = get_settings()
    try:
        provider = create_embedding_provider(settings)
    except ConfigurationError as e:
        print(f"Error: {e}")
        return 1

    if provider is None:
        print("EMBEDDING_PROVIDER=none: no provider configured.")
        return 0

    try:
        models = await provider.list_models()
    except ProviderError as e:
        print(f"Error listing models: {e}")
        return 1

    print("\n=== AVAILABLE EMBEDDING MODELS ===\n")
    for name in models:
        print(name)
    print("\n==================================\n")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
