"""
Trading card artifacts for broadcasts.

Image composition is not done here: CardRenderer asks an injected `compose`
callable for the PNG bytes (by default the configured template file is read
as-is) and adds the order bookkeeping and caption around it.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import config
from database import TradingPost, utcnow

logger = logging.getLogger("emission.cards")


@dataclass(frozen=True)
class Artifact:
    data: bytes
    caption: str
    order_number: Optional[int] = None
    pair: Optional[str] = None


def format_card_caption(order_number: int, pair: str, executed_at: datetime) -> str:
    return (
        f"✅ Order #{order_number} executed\n"
        f"Exchange: binance\n"
        f"Trading pair: {pair}\n"
        f"Order execution time: {executed_at:%H:%M:%S}"
    )


def read_template(path: str = None) -> Callable[[Dict], bytes]:
    """Compose function that returns the bytes of a pre-rendered card image."""
    template = Path(path or config.CARD_TEMPLATE_PATH)

    def compose(card: Dict) -> bytes:
        return template.read_bytes()

    return compose


class CardRenderer:
    """
    Usage:
        renderer = CardRenderer()
        artifact = renderer.render()   # blocking; run it in a thread
    """

    def __init__(
        self,
        compose: Callable[[Dict], bytes] = None,
        pairs: List[str] = None,
        rng: random.Random = None,
    ):
        self.compose = compose or read_template()
        self.pairs = pairs or config.CARD_PAIRS
        self.rng = rng or random.Random()

    def render(self) -> Artifact:
        if not self.pairs:
            raise ValueError("no trading pairs configured (CARD_PAIRS)")

        executed_at = utcnow()
        card = {
            "order_number": TradingPost.next_order_number(),
            "pair": self.rng.choice(self.pairs),
            "executed_at": executed_at,
        }
        data = self.compose(card)
        if not data:
            raise ValueError("card composer returned no image data")

        # Record only once the image exists, so a failed render doesn't burn an order number
        TradingPost.create(card["order_number"], card["pair"], posted_at=executed_at)
        logger.info(f"card_rendered: order #{card['order_number']} {card['pair']} ({len(data)} bytes)")

        return Artifact(
            data=data,
            caption=format_card_caption(card["order_number"], card["pair"], executed_at),
            order_number=card["order_number"],
            pair=card["pair"],
        )
