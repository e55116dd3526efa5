"""Infrastructure - SQLite connection pooling and schema"""
