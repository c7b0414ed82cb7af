import asyncio
import json
import logging
from dataclasses import dataclass

import httpx

from bulk_seo.config import settings

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    pass


class InvalidResponse(ProviderError):
    pass


class ProviderTimeoutError(ProviderError):
    pass


@dataclass
class ProviderResult:
    content: str
    total_tokens: int
    model: str = ""


@dataclass
class GeneratedSeo:
    language: str
    data: dict
    total_tokens: int


_TRANSIENT = {429, 500, 502, 503, 504}
_REQUIRED_KEYS = ("title", "metaDescription")


class OpenRouterClient:
    def __init__(self, api_key: str | None = None, base_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self.transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("OPENROUTER_API_KEY is not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post_chat(self, body: dict) -> dict:
        last_err: Exception | None = None
        for attempt in range(settings.provider_max_attempts):
            try:
                async with httpx.AsyncClient(timeout=settings.provider_timeout_sec, transport=self.transport) as client:
                    r = await client.post(f"{self.base_url}/chat/completions", headers=self._headers(), json=body)
                    r.raise_for_status()
                    return r.json()
            except httpx.TimeoutException as exc:
                last_err = ProviderTimeoutError(str(exc))
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in _TRANSIENT:
                    last_err = ProviderError(f"transient_http_{code}")
                else:
                    raise ProviderError(f"http_{code}: {exc.response.text[:300]}") from exc
            except httpx.HTTPError as exc:
                last_err = ProviderError(str(exc))
            except ValueError as exc:
                raise InvalidResponse(f"invalid_provider_body: {exc}") from exc

            logger.warning(f"Provider call attempt {attempt + 1} failed: {last_err}")
            await asyncio.sleep(0.6 * (attempt + 1))

        assert last_err is not None
        raise last_err

    async def call(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        model: str | None = None,
        system: str | None = None,
        json_mode: bool = False,
    ) -> ProviderResult:
        model = model or settings.default_model
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        body = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens or settings.generate_max_tokens,
            "temperature": settings.generate_temperature if temperature is None else temperature,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        data = await self._post_chat(body)
        try:
            content = (data["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError):
            content = ""
        if not content:
            raise ProviderError("empty_provider_content")

        usage = data.get("usage") or {}
        total = usage.get("total_tokens")
        if total is None:
            total = int(usage.get("prompt_tokens") or 0) + int(usage.get("completion_tokens") or 0)
        return ProviderResult(content=content, total_tokens=int(total), model=data.get("model", model))

    async def generate_seo(
        self,
        product_id: str,
        language: str,
        model: str | None = None,
        title: str | None = None,
        description: str | None = None,
    ) -> GeneratedSeo:
        prompt = (
            f"Write SEO metadata in language '{language}' for the product below. "
            "Return ONLY a JSON object with keys: title, metaDescription, slug, bodyHtml, bullets, faq. "
            "Constraints: title <= 70 chars; metaDescription 160-180 chars; slug kebab-case; "
            "bodyHtml safe HTML only (p, ul, ol, li, br, strong, em, h1-h3); "
            "bullets 3-6 short value points; faq 2-5 items with q and a. "
            "Use only facts present in the product data.\n\n"
            f"PRODUCT ID: {product_id}\n"
            f"TITLE: {title or ''}\n"
            f"DESCRIPTION: {description or ''}"
        )
        result = await self.call(
            prompt,
            model=model,
            system="You are an e-commerce SEO copywriter. Output strict JSON.",
            json_mode=True,
        )
        return GeneratedSeo(language=language, data=parse_seo_json(result.content), total_tokens=result.total_tokens)


def parse_seo_json(content: str) -> dict:
    if content.startswith("```"):
        content = content.strip("`")
        if content.startswith("json"):
            content = content[4:].strip()

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise InvalidResponse(f"invalid_seo_json: {content[:250]}") from exc

    if not isinstance(parsed, dict):
        raise InvalidResponse("seo_response_not_object")
    missing = [k for k in _REQUIRED_KEYS if not parsed.get(k)]
    if missing:
        raise InvalidResponse(f"seo_response_missing: {','.join(missing)}")

    parsed["title"] = str(parsed["title"])[:70]
    parsed["metaDescription"] = str(parsed["metaDescription"])[:200]
    bullets = parsed.get("bullets")
    parsed["bullets"] = [str(b) for b in bullets][:6] if isinstance(bullets, list) else []
    faq = parsed.get("faq")
    parsed["faq"] = faq[:5] if isinstance(faq, list) else []
    return parsed
