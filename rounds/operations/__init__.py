"""
Operations Layer

Business logic that composes database access into complete workflows. Each
operations class runs its read-modify-write work inside a retried transaction,
validates business rules, and publishes change events after commit.

Architecture:
- Database layer: Models, sessions and optimistic-concurrency retry
- Operations layer: Business logic composition and workflows
- Presentation layer: External collaborator, not part of this package

Each operations module focuses on a specific domain:
- PlayerOperations: Player lifecycle and identity-provider integration
- MatchOperations: Head-to-head match lifecycle and rating settlement
- MatchmakingOperations: Rating-proximity queue, pairing and acceptance
- TournamentOperations: Registration, brackets, progression and standings
"""
