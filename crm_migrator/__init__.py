"""CRM data migration engine for the claims platform."""
