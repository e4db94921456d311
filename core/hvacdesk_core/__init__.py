"""HVACDesk state store: ORM tables, engines, and repositories."""
