"""
repositories/ - Access Layer
============================
`GuildRepository` is the only repository: CRUD and role privileges for the
`guilds` table. SQL goes out through a `Database` context, rows come back
as `Guild` objects via the registry-driven `GuildMapper`.
"""
