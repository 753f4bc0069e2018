"""
Newsletter module.

Public subscribe/unsubscribe plus staff authoring and batched sending through
Resend. Sends run inline in the request, one batch at a time.
"""
