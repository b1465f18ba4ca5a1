"""
Employers module.

Scope:
- Employer profiles and their lifecycle (applicant -> registered -> eligible -> binder_paid -> enrolled)
- Census roster (manual entry, CSV import) and benefit group assignments
- Coverage decisions recorded per assignment (selected / waived)
"""
