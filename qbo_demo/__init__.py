"""QuickBooks Online demo: OAuth connect, projects and project-linked transactions."""
