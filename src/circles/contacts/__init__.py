"""Local contact store -- Contact and ContactGroup collections with referential cleanup.

Provides Pydantic schemas (Contact, ContactGroup, ImportedContact) and the
LocalContactStore that owns them in memory and persists them through a
KeyValueStore.
"""
