"""
Shared Supabase client.

Holds the three tables the worker owns (schedules, changes, notifications;
see schema.sql). Built once at import with the service role key: the worker
writes snapshots and change rows that row-level security would otherwise block.
"""

from supabase import Client, create_client
from supabase.lib.client_options import SyncClientOptions as ClientOptions

from courtview.config import settings

supabase: Client = create_client(
    settings.supabase_url,
    settings.supabase_service_role_key,
    options=ClientOptions(
        schema=settings.supabase_schema,
        postgrest_client_timeout=settings.supabase_timeout_seconds,
    ),
)
