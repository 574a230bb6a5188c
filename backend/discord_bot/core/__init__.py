"""Bot infrastructure: settings, logging, poll scheduler, health server."""
