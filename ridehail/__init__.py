"""Ride lifecycle service: HTTP API over a relational ride store, plus a client ride store."""
