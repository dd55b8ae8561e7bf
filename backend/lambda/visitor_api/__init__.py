"""visitor_api — Gated-community visitor lifecycle Lambda."""
