"""On-chain collaborators for Wallet Autopilot.

The approval indexer is read-only; the authority provider submits
transactions under a wallet's delegation. Both are reached over HTTP and
every call carries an explicit timeout.
"""
