"""Stripe payments: hour-pack checkout fulfilment and the webhook receiver."""
