"""
Main orchestrator for the Roster Sync application.

Reads the member directory from the configured source, normalizes it into the
publishable roster, reconciles that roster against the sink and reports the
outcome.
"""

import sys
import inspect
import logging
import importlib
from datetime import datetime
from typing import Dict, Any, Optional

from roster_sync.avatar import AvatarClassifier
from roster_sync.config import load_config, ConfigurationError
from roster_sync.logging_setup import setup_logging
from roster_sync.models import NormalizationReport, SyncResult
from roster_sync.normalizer import normalize_entries
from roster_sync.reconciler import Reconciler
from roster_sync.roles import RoleValidator
from roster_sync.sinks.base import SinkAdapterBase, SinkAPIError, SinkAuthenticationError
from roster_sync.sources.base import SourceAdapterBase, SourceError
from roster_sync.notifications import (
    send_failure_notification,
    send_sync_report,
    test_notification_config,
)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_ITEM_ERRORS = 1
EXIT_CONFIG_ERROR = 2
EXIT_SOURCE_ERROR = 3
EXIT_SINK_ERROR = 4
EXIT_UNEXPECTED = 5


class SyncError(Exception):
    """Raised when an adapter cannot be set up for the run."""

    def __init__(self, message: str, component: str = 'source'):
        super().__init__(message)
        self.component = component


class SyncOrchestrator:
    """
    Runs one roster synchronization.

    Source and sink adapters are normally built from configuration; passing
    them in skips the dynamic loading (adapters passed in are not closed by
    the orchestrator).
    """

    def __init__(self, config_path: Optional[str] = None,
                 source: Optional[SourceAdapterBase] = None,
                 sink: Optional[SinkAdapterBase] = None,
                 config: Optional[Dict[str, Any]] = None,
                 dry_run: Optional[bool] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            source: Source adapter to use instead of the configured one
            sink: Sink adapter to use instead of the configured one
            config: Already loaded configuration (skips file loading)
            dry_run: Compute the plan without writing; overrides sync.dry_run
        """
        self.config_path = config_path
        self.config = config
        self.source = source
        self.sink = sink
        self._owns_source = source is None
        self._owns_sink = sink is None
        self._dry_run = dry_run

        self.report: Optional[NormalizationReport] = None
        self.result: Optional[SyncResult] = None
        self._sink_writes_started = False
        self.sync_stats: Dict[str, Any] = {
            'source_entries': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'dry_run': False,
        }

    @property
    def dry_run(self) -> bool:
        if self._dry_run is not None:
            return self._dry_run
        return bool((self.config or {}).get('sync', {}).get('dry_run', False))

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 success, 1 item errors, 2 configuration, 3 source,
            4 sink, 5 unexpected)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            self.sync_stats['dry_run'] = self.dry_run

            logger.info(f"Starting Roster Sync{' (dry run)' if self.dry_run else ''}")

            self._open_adapters()
            self.report = self._normalize()
            self.result = self._reconcile()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()
            self._send_sync_report()

            if self.result is not None and self.result.has_errors:
                logger.warning(f"Sync completed with {len(self.result.errors)} item errors")
                return EXIT_ITEM_ERRORS
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except SyncError as e:
            logger.error(f"Adapter setup failed: {e}")
            self._send_failure_notification("Adapter Setup Failed", str(e), {
                'Component': e.component.capitalize(),
                'Impact': 'Sync aborted before any sink change',
            })
            return EXIT_SOURCE_ERROR if e.component == 'source' else EXIT_SINK_ERROR
        except SourceError as e:
            logger.error(f"Source error: {e}")
            self._send_failure_notification("Source Unavailable", str(e), {
                'Component': f"Source ({self._adapter_name('source')})",
                'Impact': 'Sync aborted before any sink change',
            })
            return EXIT_SOURCE_ERROR
        except SinkAPIError as e:
            logger.error(f"Sink error: {e}")
            self._send_failure_notification("Sink Unavailable", str(e), {
                'Component': f"Sink ({self._adapter_name('sink')})",
                'Status Code': e.status_code or 'n/a',
                'Impact': 'Sync aborted before any sink change',
            })
            return EXIT_SINK_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        if self.config is not None:
            return
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _open_adapters(self):
        if self.source is None:
            self.source = self._load_adapter('sources', self.config['source'], SourceAdapterBase)
        if self.sink is None:
            self.sink = self._load_adapter('sinks', self.config['sink'], SinkAdapterBase)

    def _load_adapter(self, package: str, adapter_config: Dict[str, Any], base_class: type):
        """Import roster_sync.<package>.<module> and instantiate its adapter class."""
        module_name = adapter_config['module']
        try:
            module = importlib.import_module(f"roster_sync.{package}.{module_name}")
        except ImportError as e:
            raise ConfigurationError(f"Failed to import {package} module {module_name}: {e}")

        adapter_class = None
        for attr_name in dir(module):
            attr = getattr(module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, base_class) and
                    attr is not base_class and
                    not inspect.isabstract(attr)):
                adapter_class = attr
                break

        if not adapter_class:
            raise ConfigurationError(f"No {base_class.__name__} subclass found in module {module_name}")

        try:
            return adapter_class(adapter_config)
        except (SourceError, SinkAPIError):
            raise
        except Exception as e:
            raise SyncError(f"Failed to initialize {module_name}: {e}",
                            component='source' if package == 'sources' else 'sink')

    def _normalize(self) -> NormalizationReport:
        entries = self.source.list_entries()
        self.sync_stats['source_entries'] = len(entries)
        logger.info(f"Source returned {len(entries)} entries")

        avatar_config = self.config.get('avatar', {})
        classifier = AvatarClassifier(avatar_config)
        validator = RoleValidator.from_config(self.config.get('roles', {}))
        return normalize_entries(entries, classifier, validator,
                                 run_timeout=avatar_config.get('run_timeout_seconds'))

    def _reconcile(self) -> Optional[SyncResult]:
        if not self.sink.authenticate():
            raise SinkAuthenticationError(f"Authentication failed for sink {self.sink.name}")

        reconciler = Reconciler(self.sink, self.config.get('error_handling', {}))
        existing = self.sink.list_existing()
        plan = reconciler.reconcile(self.report.desired, existing)

        if self.dry_run:
            for record in plan.to_create:
                logger.info(f"[dry run] would create {record.identity}")
            for identity, _ in plan.to_update:
                logger.info(f"[dry run] would update {identity}")
            for identity in plan.to_delete:
                logger.info(f"[dry run] would delete {identity}")
            return None

        self._sink_writes_started = True
        result = reconciler.apply(plan)
        self._update_alumni_count(result)
        return result

    def _update_alumni_count(self, result: SyncResult):
        if not hasattr(self.sink, 'update_alumni_count'):
            return
        try:
            self.sink.update_alumni_count(self.report.alumni_count)
        except SinkAPIError as e:
            logger.error(f"Failed to update alumni count: {e}")
            result.record_error('siteSettings', 'alumni-count', str(e))

    def _adapter_name(self, kind: str) -> str:
        adapter = getattr(self, kind, None)
        if adapter is not None:
            return adapter.name
        return ((self.config or {}).get(kind) or {}).get('module', 'unknown')

    def _send_failure_notification(self, title: str, error_message: str,
                                   additional_info: Optional[Dict[str, Any]] = None):
        if not self.config:
            return
        send_failure_notification(title, error_message, self.config.get('notifications', {}),
                                  additional_info, sink_changed=self._sink_writes_started)

    def _send_sync_report(self):
        send_sync_report(self.result, self.report, self.config.get('notifications', {}), self.sync_stats)

    def _log_sync_summary(self):
        stats = self.sync_stats
        report = self.report

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            runtime_str = f"{minutes}m {stats['runtime_seconds'] % 60:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Source entries: {stats['source_entries']}")
        logger.info(f"Published members: {len(report.desired)}")
        logger.info(f"Alumni: {report.alumni_count}")
        logger.info(f"Default avatars: {report.default_avatar_count}")
        for reason, exclusions in report.exclusions_by_reason().items():
            logger.info(f"Excluded ({reason}): {len(exclusions)}")

        if self.result is None:
            logger.info("Dry run: no sink changes applied")
            return
        logger.info(f"Created: {self.result.created}")
        logger.info(f"Updated: {self.result.updated}")
        logger.info(f"Deleted: {self.result.deleted}")
        logger.info(f"Errors: {len(self.result.errors)}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(check: str, passed: Optional[bool], message: str):
            status = 'skip' if passed is None else ('pass' if passed else 'fail')
            health_status['checks'][check] = {'status': status, 'message': message}
            if passed is False:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        try:
            self._open_adapters()
        except (ConfigurationError, SyncError, SourceError, SinkAPIError) as e:
            record('adapters', False, f'Adapter setup failed: {e}')
            self._cleanup()
            return health_status

        try:
            if self.source.test_connection():
                record('source', True, f'{self.source.name} reachable')
            else:
                record('source', False, f'{self.source.name} connection test failed')

            if self.sink.authenticate() and self.sink.test_connection():
                record('sink', True, f'{self.sink.name} reachable')
            else:
                record('sink', False, f'{self.sink.name} connection test failed')
        finally:
            self._cleanup()

        notifications_config = self.config.get('notifications', {})
        missing = []
        if notifications_config.get('enable_email', False):
            missing += [f for f in ('smtp_server', 'email_from', 'email_to') if not notifications_config.get(f)]
        if notifications_config.get('enable_slack', False):
            missing += [f for f in ('slack_token', 'slack_channel') if not notifications_config.get(f)]

        if not (notifications_config.get('enable_email') or notifications_config.get('enable_slack')):
            record('notifications', None, 'Notifications disabled')
        elif missing:
            record('notifications', False, f'Missing notification config: {missing}')
        else:
            record('notifications', True, 'Notification configuration valid')

        return health_status

    def _cleanup(self):
        if self.source is not None and self._owns_source:
            self.source.close()
            self.source = None
        if self.sink is not None and self._owns_sink:
            self.sink.close_connection()
            self.sink = None


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Roster Sync: publish the member roster to the website')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Compute and log the plan without writing to the sink')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send a test notification on every enabled channel')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=True if args.dry_run else None)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            config = load_config(args.config)
        except ConfigurationError as e:
            print(f"Error testing notifications: {e}")
            sys.exit(EXIT_CONFIG_ERROR)

        if test_notification_config(config.get('notifications', {})):
            print("Test notification sent successfully")
            sys.exit(0)
        print("Failed to send test notification")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
