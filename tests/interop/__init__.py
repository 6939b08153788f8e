"""
End-to-end scenarios against a real container runtime.

Tests verify:

- IBC between two Cosmos chains through a relayer
- Provider and consumer chains under interchain security
- Funding, transfers and memos on Cosmos and UTXO chains
- Balance polling against an external actor
- Cleanup after a failed build
"""
