from campusfix.storage.files import FileStore, InMemoryFileStore, LocalFileStore


def get_file_store(file_store_type: str, file_store_path: str | None = None) -> FileStore:
    if file_store_type == 'local':
        if not file_store_path:
            raise ValueError('file_store_path is required for a local file store')
        return LocalFileStore(file_store_path)
    if file_store_type == 'memory':
        return InMemoryFileStore()
    raise ValueError(f'Unknown file store type: {file_store_type}')


__all__ = ['FileStore', 'InMemoryFileStore', 'LocalFileStore', 'get_file_store']
