"""Domain services — mapping directory, rates, ledger, engine, webhooks."""
