import asyncio
import json
import os
import time

from bulk_seo.ai_queue import AIQueue
from bulk_seo.config import settings
from bulk_seo.openrouter import OpenRouterClient, ProviderError


async def _run(languages: list[str], model: str) -> bool:
    queue = AIQueue()
    client = OpenRouterClient()
    title = os.getenv("SMOKE_TITLE", "Organic cotton crew neck t-shirt")
    description = os.getenv(
        "SMOKE_DESCRIPTION",
        "Soft 180gsm organic cotton tee. Regular fit, ribbed collar, pre-shrunk. Machine wash at 30C.",
    )

    started = time.time()
    results = await asyncio.gather(
        *[
            queue.add_bulk(
                lambda lang=lang: client.generate_seo("smoke-1", lang, model=model, title=title, description=description),
                language=lang,
            )
            for lang in languages
        ],
        return_exceptions=True,
    )

    ok = True
    for lang, result in zip(languages, results):
        if isinstance(result, ProviderError):
            print(f"[FAIL] {lang}: {type(result).__name__}: {result}")
            ok = False
        elif isinstance(result, BaseException):
            raise result
        else:
            print(f"[OK] {lang}: tokens={result.total_tokens} title={result.data['title']!r}")
            print(json.dumps(result.data, ensure_ascii=False, indent=2)[:800])

    stats = queue.get_stats()["stats"]
    print(f"[INFO] {time.time() - started:.1f}s, queue stats: {stats}")
    return ok


def main() -> int:
    if not settings.openrouter_api_key:
        print("[FAIL] OPENROUTER_API_KEY is empty. Put it into .env and retry.")
        return 2

    languages = [x.strip() for x in os.getenv("SMOKE_LANGUAGES", "en,de").split(",") if x.strip()]
    model = os.getenv("SMOKE_MODEL", settings.default_model)
    ok = asyncio.run(_run(languages, model))
    print("[DONE] smoke generation passed." if ok else "[DONE] smoke generation completed with failures.")
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
