"""
Shared constants for the FHIR search engine.
"""

MODULE_ID = "fhir2"

# Configuration properties
DEFAULT_PAGE_SIZE_PROPERTY = "fhir2.paging.default"
MAXIMUM_PAGE_SIZE_PROPERTY = "fhir2.paging.maximum"
DEFAULT_PAGE_SIZE = 10
MAXIMUM_PAGE_SIZE = 100
PAGING_CACHE_SIZE = 10_000

# Search handlers
INCLUDE_SEARCH_HANDLER = "_include"
REVERSE_INCLUDE_SEARCH_HANDLER = "_revinclude"
COMMON_SEARCH_HANDLER = "common.search.handler"
ID_PROPERTY = "_id"
LAST_UPDATED_PROPERTY = "_lastUpdated"

ENCOUNTER_REFERENCE_SEARCH_HANDLER = "encounter.reference.search.handler"
PATIENT_REFERENCE_SEARCH_HANDLER = "patient.reference.search.handler"
PARTICIPANT_REFERENCE_SEARCH_HANDLER = "participant.reference.search.handler"
LOCATION_REFERENCE_SEARCH_HANDLER = "location.reference.search.handler"
MEDICATION_REFERENCE_SEARCH_HANDLER = "medication.reference.search.handler"
OBSERVATION_REFERENCE_SEARCH_HANDLER = "observation.reference.search.handler"
CODED_SEARCH_HANDLER = "coded.search.handler"
CATEGORY_SEARCH_HANDLER = "category.search.handler"
DATE_RANGE_SEARCH_HANDLER = "date.range.search.handler"
QUANTITY_SEARCH_HANDLER = "value.quantity.search.handler"
STRING_SEARCH_HANDLER = "string.search.handler"
NAME_SEARCH_HANDLER = "name.search.handler"
HAS_SEARCH_HANDLER = "_has"

# Resource types
PATIENT = "Patient"
PRACTITIONER = "Practitioner"
ENCOUNTER = "Encounter"
OBSERVATION = "Observation"
LOCATION = "Location"
MEDICATION = "Medication"
MEDICATION_REQUEST = "MedicationRequest"
DIAGNOSTIC_REPORT = "DiagnosticReport"
SERVICE_REQUEST = "ServiceRequest"
ALLERGY_INTOLERANCE = "AllergyIntolerance"
CONDITION = "Condition"
TASK = "Task"
PERSON = "Person"
