"""
Booking transaction handlers.

Handlers coordinate the repository's conditional writes with the Google
Calendar projection:
1. Validation and FSM rules before any write
2. Committed-overlap check and write in one atomic unit
3. Calendar projection only AFTER the commit (best effort)
4. Exhaustive logging with trace_id for debugging

Transaction handlers:
- BookingTransaction: create, update, status change and resync of appointments
"""

from booking.transactions.booking_transaction import BookingTransaction

__all__ = ["BookingTransaction"]
