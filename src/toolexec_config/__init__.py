"""Runtime settings (dotenv, paths, logging) and wrapped-server configuration."""
