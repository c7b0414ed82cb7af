import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from bulk_seo.config import settings
from bulk_seo.db import get_shop

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "seo_ai"

_METAFIELDS_SET = """
mutation SetSeo($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    userErrors { field message }
  }
}
"""


class ApplyFailure(RuntimeError):
    pass


@dataclass
class ApplyResult:
    ok: bool
    errors: list[str] = field(default_factory=list)


class PlatformClient(Protocol):
    async def apply(
        self,
        shop: str,
        product_id: str,
        language: str,
        content: dict,
        options: dict | None = None,
    ) -> ApplyResult: ...


def product_gid(product_id: str) -> str:
    if product_id.startswith("gid://"):
        return product_id
    return f"gid://shopify/Product/{product_id}"


class ShopifyMetafieldClient:
    """Writes generated SEO as a per-language JSON metafield on the product."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.transport = transport

    async def apply(
        self,
        shop: str,
        product_id: str,
        language: str,
        content: dict,
        options: dict | None = None,
    ) -> ApplyResult:
        record = get_shop(shop)
        if not record or not record.get("access_token"):
            return ApplyResult(ok=False, errors=["missing_access_token"])

        options = options or {}
        metafields = [
            {
                "ownerId": product_gid(product_id),
                "namespace": METAFIELD_NAMESPACE,
                "key": f"seo__{language.lower()}",
                "type": "json",
                "value": json.dumps(content, ensure_ascii=False),
            }
        ]
        if options.get("write_bullets", True) and content.get("bullets"):
            metafields.append(
                {
                    "ownerId": product_gid(product_id),
                    "namespace": METAFIELD_NAMESPACE,
                    "key": f"bullets__{language.lower()}",
                    "type": "json",
                    "value": json.dumps(content["bullets"], ensure_ascii=False),
                }
            )

        url = f"https://{shop}/admin/api/{settings.platform_api_version}/graphql.json"
        headers = {"X-Shopify-Access-Token": record["access_token"], "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=settings.platform_timeout_sec, transport=self.transport) as client:
                r = await client.post(url, headers=headers, json={"query": _METAFIELDS_SET, "variables": {"metafields": metafields}})
                r.raise_for_status()
                body = r.json()
        except httpx.HTTPStatusError as exc:
            return ApplyResult(ok=False, errors=[f"http_{exc.response.status_code}"])
        except httpx.HTTPError as exc:
            return ApplyResult(ok=False, errors=[f"transport: {exc}"])
        except ValueError:
            logger.warning(f"Non-JSON platform response for {shop} {product_id} [{language}]")
            return ApplyResult(ok=False, errors=["invalid_platform_response"])
        if not isinstance(body, dict):
            return ApplyResult(ok=False, errors=["invalid_platform_response"])

        errors = [e.get("message", "graphql_error") for e in body.get("errors") or []]
        payload = (body.get("data") or {}).get("metafieldsSet") or {}
        errors += [e.get("message", "user_error") for e in payload.get("userErrors") or []]
        if errors:
            logger.warning(f"Apply rejected for {shop} {product_id} [{language}]: {errors}")
        return ApplyResult(ok=not errors, errors=errors)
