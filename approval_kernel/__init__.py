"""
Approval Kernel

A multi-approver review workflow that attaches to any entity by an opaque
(entity_type, entity_id) key, with:
- Unanimous approval, veto by any decline or revision request
- Upserted approver responses and append-only comments
- Numbered rounds with full history
- Optimistic concurrency on the round row
"""

__version__ = "0.1.0"
