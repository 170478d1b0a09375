"""SQL storage primitives shared by the job store."""
