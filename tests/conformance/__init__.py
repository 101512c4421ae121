"""
Conformance tests for the flight invariants.

Each module states one invariant and checks it with hypothesis properties
plus explicit examples:
- test_phase_ordering: the phase only ever takes a legal edge
- test_atomicity: transitions and transactions are all-or-nothing
- test_conservation: boarding escrow, issuance and redemption conserve value
- test_idempotency: repeated intents and signals have no second effect
- test_temporal: time ordering, windows, cooldown and history reconstruction
- test_determinism: identical inputs give identical ledgers
"""
