"""Settings, organization profiles, project templates and rule tables."""
