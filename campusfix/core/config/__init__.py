from campusfix.core.config.campusfix_config import (
    CampusFixConfig,
    load_campusfix_config,
)

__all__ = ['CampusFixConfig', 'load_campusfix_config']
