"""Signet faucet: on-chain payouts and leased Lightning channels."""
