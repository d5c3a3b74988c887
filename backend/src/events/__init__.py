"""Event contracts, bus port, transactional publisher and inbound consumer."""
