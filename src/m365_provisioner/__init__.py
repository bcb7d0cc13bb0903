"""Microsoft 365 tenant session, discovery and user provisioning.

The session manager connects to one tenant at a time through Microsoft Graph and
Exchange Online, keeps a snapshot of the tenant's licenses, groups, users, domains
and mailboxes, and provisions new users with their group, mailbox and license
assignments.
"""
