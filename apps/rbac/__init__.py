"""
RBAC (Role-Based Access Control) application.

Provides:
- Users with a single role, roles bundling permissions
- An in-process permission cache with TTL and explicit invalidation
- The access decision engine used by every gated endpoint
- An append-only audit trail for role mutations
- Reverting audited role creations, updates and deletions
"""
