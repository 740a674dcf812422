"""
tests/
------
Invoice Record Builder: Test Package
------------------------------------
Test suites for the Invoice Record bundle engine and its HTTP surface.

Test Modules:
    - test_identifiers.py:       Identifier generation and coercion
    - test_temporal.py:          Date normalization and offset timestamps
    - test_health_addresses.py:  Health-address classification and ranking
    - test_totals.py:            Totals computation and override reconciliation
    - test_fhir_builders.py:     Per-resource FHIR builders
    - test_bundle_assembler.py:  Composition, bundle ordering, reference integrity
    - test_validation.py:        Pre-build validation
    - test_attachments.py:       Concurrent attachment reads
    - test_invoice_record.py:    End-to-end assembly properties
    - test_config.py:            Settings loading
    - test_submission_client.py: Bundle submission results
    - test_patient_directory.py: API-then-file patient lookup
    - test_main.py:              FastAPI endpoints

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""
