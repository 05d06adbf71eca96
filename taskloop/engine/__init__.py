"""Engine: model adapters, agent loop, configuration and the API server."""
