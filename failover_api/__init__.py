"""Administrative HTTP API for the DNS failover monitor."""
