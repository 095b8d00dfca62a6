"""Log backend access: query execution and correction."""
