"""
Procurement Flow - human-task orchestration for procurement requests

A requester invites N suppliers to quote; one "Complete quotation" task per
supplier fans out, the join waits for all of them, and the requester reviews
the quotations and selects a supplier (or nobody).

Fun fact: The Latin "procurare" means "to take care of" - long before it
meant purchase orders, a procurator was someone who managed affairs on
another's behalf. Our engine does exactly that, one task at a time!
"""

from procurement_flow.engine import ProcurementEngine, RequestHandle

__version__ = "0.1.0"
__all__ = ["ProcurementEngine", "RequestHandle", "__version__"]
