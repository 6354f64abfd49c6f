from compose_engine.schema.drafts import DraftSection, DraftSectionSource, DraftSectionVersion
from compose_engine.schema.jobs import ComposeJob, ComposeJobEvent
from compose_engine.schema.sources import SourceEntry

__all__ = ["ComposeJob", "ComposeJobEvent", "DraftSection", "DraftSectionSource", "DraftSectionVersion", "SourceEntry"]
