"""Script to classify one seed against every configured provider and print the outcome."""

import asyncio
import sys

sys.path.insert(0, ".")

from palette_tagging.config import get_settings
from palette_tagging.services.color_description import describe_seed
from palette_tagging.services.orchestrator import ProviderOrchestrator
from palette_tagging.services.providers import build_classifiers


async def main(seed: str):
    """Check every provider with a single attempt each."""
    settings = get_settings()
    classifiers = build_classifiers(settings)
    description = describe_seed(seed)

    print(f"Seed: {seed}")
    print(f"Colors: {', '.join(description.hex)}")
    print(f"Checking {len(classifiers)} providers...\n")

    orchestrator = ProviderOrchestrator(max_attempts=1)
    results = await orchestrator.classify_all(description, classifiers)

    for result in results:
        if result.success:
            tags = result.tags
            print(
                f"[ok]    {result.provider:<22} {tags.temperature}/{tags.contrast}/"
                f"{tags.brightness}/{tags.saturation} mood={', '.join(tags.mood)}"
            )
        else:
            print(f"[error] {result.provider:<22} {result.error[:120]}")

    failed = sum(1 for r in results if not r.success)
    print(f"\n{len(results) - failed} of {len(results)} providers returned valid tags.")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "ff6b6b,feca57,48dbfb"))
