"""
Storage package: SQLite database, event/person persistence, sync cursor and step journal.
"""
