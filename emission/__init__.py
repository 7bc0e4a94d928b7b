"""
Emission Engine — scheduled profit notifications and trading card broadcasts.

Modules:
    scheduler.py          — AsyncIO event loop, signals, midnight loops, heartbeat
    profit_generator.py   — Daily profit batches (random split, random due times)
    notifier.py           — Polls due profit events, claims and delivers them
    broadcast_scheduler.py — Daily broadcast fire times inside a local window
    dispatcher.py         — One render per fire time, fan-out with file_id reuse
    retrier.py            — Bounded retry with backoff / throttle waits
    channel.py            — Telegram Bot API client and response classification
    pacing.py             — Backoff math and the sliding-window rate limiter
    settings.py           — Broadcast settings validation
    cards.py              — Trading card artifacts and captions
    alerts.py             — Webhook alerting (Slack/Telegram/Discord)
"""
