"""Agent runtime: IR, transport client, agents, tools and orchestration."""
