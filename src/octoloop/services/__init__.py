"""Application services: settings persistence and telemetry."""
