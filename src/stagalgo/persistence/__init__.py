"""Write-behind persistence adapter."""

from stagalgo.persistence.writer import PersistenceWriter, WriteResult

__all__ = ["PersistenceWriter", "WriteResult"]
