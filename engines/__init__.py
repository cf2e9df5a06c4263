"""Pure computation helpers used by the data-access layer and the API."""
