"""Runtime components: sessions, coordination, events and configuration."""
