"""ACP session engine: spawning agents, relaying output, arbitrating permissions."""
