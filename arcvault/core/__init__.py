"""ArcVault core: data model, expiration policy, repository, scheduler, transfer."""
