"""
Scheduling primitives:
- Interval model and overlap detection (interval.py)
- Slot grid generation and availability (slots.py)
- Booking status state machine (state.py)
"""
