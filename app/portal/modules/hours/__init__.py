"""
Maintenance plans and support hours.

- Tier and hour-pack catalogue (tiers.py)
- Balance, FIFO deduction, rollover and billing-period reset (service.py)
- Usage warnings sent to the organization owner (warnings.py)
"""
