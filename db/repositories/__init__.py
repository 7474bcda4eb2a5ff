"""Repository layer for the deal reconciliation engine.

Provides lookup, creation and fill-null update methods for core CRM entities:
- companies: get_by_domain, get_by_name, create, count_contacts
- contacts: get_by_email, create, set_company_if_missing, get_without_company
- deals: iter_unresolved, fill_company, fill_primary_contact,
         link_company_via_contact, resolution_stats, count_unresolved
- stakeholders: add, add_missing_primary
- reviews: add, list_entries, mark_resolved, mark_archived
"""
