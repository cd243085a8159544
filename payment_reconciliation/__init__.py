"""Payment reconciliation scheduler package.

Recurring and operator-triggered payment reconciliation jobs, the queues that
hold them, and the admin API that inspects and controls both.
"""

__all__: list[str] = []
