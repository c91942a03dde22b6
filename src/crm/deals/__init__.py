"""Deal pipeline module -- entities, stage engine, repository and board view.

Provides SQLAlchemy models (Company, Contact, Tag, Project and the
project/contact and project/tag join entities), the Stage enum with its
stage-change function, Pydantic schemas, CrmRepository for async CRUD, and
BoardAssembler for the kanban board read model.
"""
