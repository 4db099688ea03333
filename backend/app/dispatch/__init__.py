"""
dispatch — Multi-channel message broadcasting and delivery tracking.

Sub-modules:
    channels/       — Per-channel senders (email, chat bot, social graph)
    orchestrator    — Submission, dispatch runs, resend, reporting
    jobs            — Background execution with per-message serialisation
    status          — Run verdict and fully-delivered evaluation
    recipients      — Per-channel address resolution
    retry           — Bounded retry for attachment transfers
    storage / orm   — Persistence port, SQLAlchemy and in-memory stores
    channel_config  — Static per-channel configuration
    models          — Data structures shared across the system
"""
