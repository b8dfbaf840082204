"""Delivery adapters: activity formatting and the Telegram sink."""
