"""DNS failover monitoring core."""
