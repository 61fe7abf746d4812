"""
orderbox kernel -- shared infrastructure for the order-mail tracker.

Structured logging, typed exceptions, the injectable clock, the SQLAlchemy
base/engine, ORM models and the repositories the batch jobs persist through.
Nothing in the kernel imports from ``orderbox_batch``.
"""

__version__ = "0.1.0"
