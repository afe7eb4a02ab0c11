"""Business advisor chat session.

The advisor itself is an external text service: any callable taking a JSON
summary of the shop and the user's question and returning an answer. This
module only builds the summary and keeps the transcript.

Front ends drive a chat through :class:`AdvisorSession` with their own
service; ``bulut-cli advisor-context`` prints the summary that is sent.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Sequence

from . import log
from .data_manager import ProductRow, SaleRow

AdvisorService = Callable[[str, str], str]

GREETING = (
    "Hello! I am the BulutERP assistant. Ask me about your stock, your sales "
    "or your overall financial position."
)
ERROR_REPLY = "Sorry, the advisor could not answer right now: {error}"
TOP_PRODUCT_COUNT = 5


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


def build_advisor_context(products: Sequence[ProductRow], sales: Sequence[SaleRow]) -> str:
    """Summarise the shop as a compact JSON document for the advisor.

    Keys follow the advisor's prompt contract: ``totalProducts``,
    ``criticalStockProducts``, ``recentSalesTotal``, ``salesCount`` and
    ``topProducts`` (the first five catalog entries).
    """

    payload = {
        "totalProducts": len(products),
        "criticalStockProducts": [
            {"name": product.name, "code": product.code} for product in products if product.is_critical
        ],
        "recentSalesTotal": float(sum((sale.total for sale in sales), Decimal("0"))),
        "salesCount": len(sales),
        "topProducts": [
            {"name": product.name, "stock": product.stock, "price": float(product.price)}
            for product in products[:TOP_PRODUCT_COUNT]
        ],
    }
    return json.dumps(payload, ensure_ascii=False)


@dataclass
class AdvisorSession:
    """One conversation with the advisor service.

    Each question is sent exactly once; failures are not retried and show up
    as an assistant message in the transcript.
    """

    service: AdvisorService
    messages: List[ChatMessage] = field(default_factory=lambda: [ChatMessage("assistant", GREETING)])

    def ask(self, question: str, products: Sequence[ProductRow], sales: Sequence[SaleRow]) -> ChatMessage | None:
        """Send ``question`` with a fresh shop summary and record the answer.

        Returns:
            ChatMessage | None: The appended assistant message, or ``None``
                when ``question`` is blank and nothing was sent.
        """

        text = (question or "").strip()
        if not text:
            return None

        self.messages.append(ChatMessage("user", text))
        context = build_advisor_context(products, sales)
        try:
            answer = self.service(context, text)
        except Exception as exc:  # noqa: BLE001
            log.error("Advisor service failed: %s", exc)
            reply = ChatMessage("assistant", ERROR_REPLY.format(error=exc))
        else:
            reply = ChatMessage("assistant", str(answer))
        self.messages.append(reply)
        return reply


__all__ = [
    "AdvisorService",
    "GREETING",
    "ChatMessage",
    "AdvisorSession",
    "build_advisor_context",
]
