"""LN Markets API clients, market feed and delivery transports."""
