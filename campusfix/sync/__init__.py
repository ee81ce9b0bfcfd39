from campusfix.sync.change_feed import ChangeFeed, SubscriptionHandle
from campusfix.sync.list_reconciler import (
    ErrorRetention,
    ListReconciler,
    ViewSnapshot,
    ViewState,
)
from campusfix.sync.remote_store import Page, RemoteStore, SupabaseRemoteStore

__all__ = [
    'ChangeFeed',
    'ErrorRetention',
    'ListReconciler',
    'Page',
    'RemoteStore',
    'SubscriptionHandle',
    'SupabaseRemoteStore',
    'ViewSnapshot',
    'ViewState',
]
