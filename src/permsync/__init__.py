"""
Permission sync package: reconciles channel administrators reported by
the Telegram Bot API with the locally cached ``channel_permissions`` rows.

All remote access goes through ``botapi.client.PlatformAPIClient``; all
persistence goes through ``permsync.store.PermissionRecordStore``.
Reconciliation passes for the same channel never interleave.
"""
