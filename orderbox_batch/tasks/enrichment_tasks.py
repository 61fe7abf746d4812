"""
Product name enrichment task.

Resolves raw product names into structured fields (maker, series, scale,
...) through an external AI API, with ``product_master`` as the cache.

Hooks:
    before_batch  -- bulk lookup by raw name, then by normalized name for
                     the raw misses, into the run's chunk cache.
    process_batch -- cache hits first; the misses go to the API in
                     sub-chunks of ``api_batch_size`` (the API's own limit
                     is stricter than the engine's batch size).  A failed
                     call or a result-count mismatch fails the whole
                     sub-chunk; results are never aligned by guesswork.
    after_batch   -- save non-cache-hit successes.  Save errors are logged
                     per item and tolerated; the names stay unresolved and
                     are selected again next run.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

from orderbox_kernel.domain.text import normalize_product_name
from orderbox_kernel.domain.values import ParsedProduct
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.repositories.products import ProductRepository

from orderbox_batch.domain.types import ItemResult
from orderbox_batch.tasks.base import BATCH_PROGRESS_CHANNEL

logger = get_logger("batch.tasks.enrichment")

PRODUCT_ENRICHMENT_TASK_NAME = "Product name parse"

__all__ = [
    "EnrichmentClient",
    "PRODUCT_ENRICHMENT_TASK_NAME",
    "ProductEnrichmentContext",
    "ProductEnrichmentInput",
    "ProductEnrichmentOutput",
    "ProductEnrichmentTask",
    "create_enrichment_input",
    "normalize_product_name",
]


class EnrichmentClient(Protocol):
    """The enrichment API, seen from the enrichment job."""

    def parse_chunk(self, names: list[str]) -> list[ParsedProduct] | None:
        """One result per name, in order; None when the call failed."""
        ...

    def parse_product_name(self, name: str) -> ParsedProduct:
        """Single-name call; raises on failure."""
        ...


@dataclass(frozen=True)
class ProductEnrichmentInput:
    raw_name: str
    normalized_name: str
    platform_hint: str | None = None


@dataclass(frozen=True)
class ProductEnrichmentOutput:
    input: ProductEnrichmentInput
    parsed: ParsedProduct
    cache_hit: bool = False


@dataclass
class ProductEnrichmentContext:
    client: EnrichmentClient
    products: ProductRepository
    api_batch_size: int = 10
    api_delay_seconds: float = 0
    sleep: Callable[[float], None] = time.sleep
    # Chunk cache, refreshed by before_batch
    raw_name_cache: dict[str, ParsedProduct] = field(default_factory=dict)
    normalized_cache: dict[str, ParsedProduct] = field(default_factory=dict)

    def lookup(self, item: ProductEnrichmentInput) -> ParsedProduct | None:
        cached = self.raw_name_cache.get(item.raw_name)
        if cached is None:
            cached = self.normalized_cache.get(item.normalized_name)
        return cached


def create_enrichment_input(
    raw_name: str, platform_hint: str | None = None,
) -> ProductEnrichmentInput:
    return ProductEnrichmentInput(
        raw_name=raw_name,
        normalized_name=normalize_product_name(raw_name),
        platform_hint=platform_hint,
    )


class ProductEnrichmentTask:
    """Unresolved item names -> ``product_master``."""

    name = PRODUCT_ENRICHMENT_TASK_NAME
    event_channel = BATCH_PROGRESS_CHANNEL

    def before_batch(
        self,
        inputs: Sequence[ProductEnrichmentInput],
        context: ProductEnrichmentContext,
    ) -> None:
        raw_hits = context.products.find_by_raw_names([i.raw_name for i in inputs])
        misses = [i.normalized_name for i in inputs if i.raw_name not in raw_hits]
        normalized_hits = (
            context.products.find_by_normalized_names(misses) if misses else {}
        )
        context.raw_name_cache = raw_hits
        context.normalized_cache = normalized_hits
        logger.info(
            "product_cache_loaded",
            extra={
                "raw_hits": len(raw_hits),
                "normalized_hits": len(normalized_hits),
            },
        )

    def process_batch(
        self,
        inputs: Sequence[ProductEnrichmentInput],
        context: ProductEnrichmentContext,
    ) -> list[ItemResult[ProductEnrichmentOutput]]:
        results: list[ItemResult[ProductEnrichmentOutput] | None] = []
        misses: list[tuple[int, ProductEnrichmentInput]] = []

        for index, item in enumerate(inputs):
            cached = context.lookup(item)
            if cached is not None:
                results.append(
                    ItemResult.success(
                        ProductEnrichmentOutput(input=item, parsed=cached, cache_hit=True)
                    )
                )
            else:
                misses.append((index, item))
                results.append(None)

        logger.info(
            "product_cache_checked",
            extra={"hits": len(inputs) - len(misses), "misses": len(misses)},
        )

        step = max(1, context.api_batch_size)
        for start in range(0, len(misses), step):
            if start > 0 and context.api_delay_seconds > 0:
                context.sleep(context.api_delay_seconds)
            group = misses[start:start + step]
            names = [item.raw_name for _, item in group]
            parsed_list = context.client.parse_chunk(names)

            if parsed_list is None:
                logger.warning("enrichment_api_failed", extra={"count": len(group)})
                for index, item in group:
                    results[index] = ItemResult.failure(
                        f"Enrichment API failed for: {item.raw_name}"
                    )
                continue
            if len(parsed_list) != len(group):
                logger.warning(
                    "enrichment_api_count_mismatch",
                    extra={"expected": len(group), "actual": len(parsed_list)},
                )
                for index, item in group:
                    results[index] = ItemResult.failure(
                        f"API result count mismatch for: {item.raw_name}"
                    )
                continue
            for (index, item), parsed in zip(group, parsed_list):
                results[index] = ItemResult.success(
                    ProductEnrichmentOutput(input=item, parsed=parsed)
                )

        return [r for r in results if r is not None]

    def after_batch(
        self,
        batch_number: int,
        results: Sequence[ItemResult[ProductEnrichmentOutput]],
        context: ProductEnrichmentContext,
    ) -> None:
        saved = 0
        save_errors = 0
        for result in results:
            output = result.output
            if not result.ok or output is None or output.cache_hit:
                continue
            try:
                context.products.save_product(
                    output.input.raw_name,
                    output.input.normalized_name,
                    output.parsed,
                    output.input.platform_hint,
                )
            except Exception:
                logger.error(
                    "product_save_failed",
                    extra={"raw_name": output.input.raw_name},
                    exc_info=True,
                )
                save_errors += 1
            else:
                saved += 1
        logger.info(
            "enrichment_batch_saved",
            extra={
                "batch_number": batch_number,
                "saved": saved,
                "save_errors": save_errors,
            },
        )

    def process(
        self, input: ProductEnrichmentInput, context: ProductEnrichmentContext,
    ) -> ProductEnrichmentOutput:
        cached = context.lookup(input)
        if cached is not None:
            return ProductEnrichmentOutput(input=input, parsed=cached, cache_hit=True)
        parsed = context.client.parse_product_name(input.raw_name)
        context.products.save_product(
            input.raw_name, input.normalized_name, parsed, input.platform_hint,
        )
        return ProductEnrichmentOutput(input=input, parsed=parsed)
