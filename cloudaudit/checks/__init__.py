"""Built-in checks. Each module registers its checks with the catalog on import."""
