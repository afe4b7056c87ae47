"""
Inventory Kernel

A stock-movement and double-entry bookkeeping consistency engine with:
- Append-only stock movement and journal logs
- Moving-average inventory costing
- Atomic, reversible business transactions
- Table-driven approval lifecycle
- Typed results at the coordinator boundary
"""

__version__ = "0.1.0"
