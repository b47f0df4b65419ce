"""OrgX REST API client."""
