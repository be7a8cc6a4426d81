"""walletqueue-admin - Operator tooling for walletqueue databases."""
