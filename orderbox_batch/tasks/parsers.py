"""
Order-mail parsers.

A parser turns a mail body into an ``OrderInfo`` (order and shipping mails)
or a ``CancelInfo`` (cancel mails).  Vendor grammars are configuration:
``RegexOrderParser`` / ``RegexCancelParser`` take their patterns as
arguments, and a ``ParserRegistry`` maps the ``parser_type`` stored in
shop settings to an instance.

Failure is signalled by raising ``ParseError``; the parse task tries the
next candidate parser.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Protocol, Union, runtime_checkable

from orderbox_kernel.domain.values import CancelInfo, OrderInfo, OrderLine


class ParseError(ValueError):
    """A mail body did not match the parser's grammar."""


@runtime_checkable
class OrderParser(Protocol):
    is_cancel: bool

    def parse(self, body: str) -> OrderInfo: ...


@runtime_checkable
class CancelParser(Protocol):
    is_cancel: bool

    def parse_cancel(self, body: str) -> CancelInfo: ...


AnyParser = Union[OrderParser, CancelParser]


def _to_int(text: str) -> int:
    digits = re.sub(r"[^\d-]", "", text)
    if not digits or digits == "-":
        raise ParseError(f"not a number: {text!r}")
    return int(digits)


class RegexOrderParser:
    """
    Order grammar built from regular expressions.

    ``order_number_pattern`` must have one group.  ``item_pattern`` is
    applied with ``finditer`` and must define the named group ``name``;
    ``price`` and ``quantity`` groups are optional (0 and 1 when absent).
    ``order_date_pattern`` (one group) is parsed with ``date_format``.
    """

    is_cancel = False

    def __init__(
        self,
        order_number_pattern: str,
        item_pattern: str,
        order_date_pattern: str | None = None,
        date_format: str = "%Y/%m/%d %H:%M",
    ):
        self._order_number = re.compile(order_number_pattern)
        self._item = re.compile(item_pattern, re.MULTILINE)
        self._order_date = re.compile(order_date_pattern) if order_date_pattern else None
        self._date_format = date_format

    def parse(self, body: str) -> OrderInfo:
        match = self._order_number.search(body)
        if match is None:
            raise ParseError("order number not found")
        order_number = match.group(1).strip()

        items: list[OrderLine] = []
        for item_match in self._item.finditer(body):
            groups = item_match.groupdict()
            name = (groups.get("name") or "").strip()
            if not name:
                continue
            items.append(
                OrderLine(
                    name=name,
                    unit_price=_to_int(groups["price"]) if groups.get("price") else 0,
                    quantity=_to_int(groups["quantity"]) if groups.get("quantity") else 1,
                )
            )
        if not items:
            raise ParseError(f"no items found for order {order_number}")

        order_date = None
        if self._order_date is not None:
            date_match = self._order_date.search(body)
            if date_match is not None:
                try:
                    order_date = datetime.strptime(
                        date_match.group(1).strip(), self._date_format,
                    )
                except ValueError:
                    order_date = None

        return OrderInfo(
            order_number=order_number,
            order_date=order_date,
            items=tuple(items),
        )


class RegexCancelParser:
    """
    Cancel grammar: order number, product name and (optional) quantity,
    each a pattern with one group.
    """

    is_cancel = True

    def __init__(
        self,
        order_number_pattern: str,
        product_pattern: str,
        quantity_pattern: str | None = None,
    ):
        self._order_number = re.compile(order_number_pattern)
        self._product = re.compile(product_pattern)
        self._quantity = re.compile(quantity_pattern) if quantity_pattern else None

    def parse_cancel(self, body: str) -> CancelInfo:
        order_match = self._order_number.search(body)
        if order_match is None:
            raise ParseError("order number not found")
        product_match = self._product.search(body)
        if product_match is None:
            raise ParseError("cancelled product not found")
        quantity = 1
        if self._quantity is not None:
            quantity_match = self._quantity.search(body)
            if quantity_match is not None:
                quantity = _to_int(quantity_match.group(1))
        return CancelInfo(
            order_number=order_match.group(1).strip(),
            product_name=product_match.group(1).strip(),
            cancel_quantity=quantity,
        )


class ParserRegistry:
    """``parser_type`` -> parser instance."""

    def __init__(self) -> None:
        self._parsers: dict[str, AnyParser] = {}

    def register(self, parser_type: str, parser: AnyParser) -> None:
        if parser_type in self._parsers:
            raise ValueError(f"Parser type '{parser_type}' is already registered")
        self._parsers[parser_type] = parser

    def get(self, parser_type: str) -> AnyParser | None:
        return self._parsers.get(parser_type)

    def is_cancel_parser(self, parser_type: str) -> bool:
        parser = self._parsers.get(parser_type)
        return bool(parser is not None and parser.is_cancel)

    def parser_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._parsers))

    def __contains__(self, parser_type: str) -> bool:
        return parser_type in self._parsers
