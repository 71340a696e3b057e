"""StoryPress fulfillment API: Stripe webhooks, admin operations and credits."""

__version__ = "0.1.0"
