"""Healthcare integrations: FHIR client and resource mapping."""
