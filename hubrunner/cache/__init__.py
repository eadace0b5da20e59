from .hub import DownloadStream, HubClient, RemoteFile, RepositoryInfo
from .references import ArtifactReference, LocalArtifact, RemoteArtifact
from .store import ArtifactCache, CachedFile, CachedRepository, CacheUsage, default_cache_root

__all__ = [
    "ArtifactCache",
    "ArtifactReference",
    "CacheUsage",
    "CachedFile",
    "CachedRepository",
    "DownloadStream",
    "HubClient",
    "LocalArtifact",
    "RemoteArtifact",
    "RemoteFile",
    "RepositoryInfo",
    "default_cache_root",
]
