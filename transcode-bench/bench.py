import os
import sys
import logging
import argparse
import asyncio

# Required: Use uvloop for better performance
import uvloop
asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

# Add the current directory to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import configuration
from configuration import EncodingParameters, RunSettings
from common.adapter_factory import ENCODING_SYSTEMS, STORAGE_SYSTEMS, create_encoding_system, create_storage_system
from common.batch_executor import BatchExecutor
from common.errors import ConfigurationError
from common.logging_setup import setup_logging

logger = logging.getLogger(__name__)


class TranscodeBenchmarkCLI:
    """CLI interface for the transcoding benchmark."""

    def __init__(self, environ=None):
        self.environ = os.environ if environ is None else environ
        self.parser = self._create_parser()

    def _create_parser(self):
        """Create the main argument parser."""
        parser = argparse.ArgumentParser(
            description='Transcoding Benchmark CLI',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Services, credentials and encoding parameters are read from BM_* environment
variables (see configuration.py). Command line options override them.

Examples:
  # Encode every mp4 in the bucket with Zencoder and print the results
  BM_INPUT='media/*.mp4' python bench.py run --service zencoder --storage s3

  # Same test on Elastic Transcoder, saving per-request records to Parquet
  python bench.py run --service aws --storage s3 --report-dir results

  # Delete the outputs of the last run
  python bench.py cleanup --service aws --storage s3
            """
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        for name, help_text in (('run', 'Run one encoding test iteration'),
                                ('cleanup', 'Delete outputs created by the last run')):
            command_parser = subparsers.add_parser(name, help=help_text)
            command_parser.add_argument('--service', choices=sorted(ENCODING_SYSTEMS),
                                        default=configuration.SERVICE or None,
                                        help='Encoding service (default: BM_SERVICE)')
            command_parser.add_argument('--storage', choices=sorted(STORAGE_SYSTEMS),
                                        default=configuration.STORAGE_SERVICE or None,
                                        help='Storage service (default: BM_STORAGE_SERVICE)')
            command_parser.add_argument('--container', type=str, default=configuration.STORAGE_CONTAINER or None,
                                        help='Storage container (default: BM_STORAGE_CONTAINER)')
            command_parser.add_argument('--debug', action='store_true', help='Log every request')

        subparsers.choices['run'].add_argument('--input', type=str, default=None,
                                               help='Input object filter, * is a wildcard (default: BM_INPUT)')
        subparsers.choices['run'].add_argument('--report-dir', type=str, default=None,
                                               help='Save per-request records to Parquet in this directory')

        return parser

    def _build(self, args, recorder=None):
        """Create the executor and both adapters from arguments and environment."""
        settings = RunSettings.from_env(self.environ)
        if args.debug:
            settings.debug = True
        params = EncodingParameters.from_env(self.environ)
        if getattr(args, 'input', None):
            params.input_filter = args.input

        env = self.environ.get
        setup_logging(settings.debug, secrets=[env('BM_SERVICE_KEY'), env('BM_SERVICE_SECRET'),
                                               env('BM_STORAGE_KEY'), env('BM_STORAGE_SECRET')])

        container = args.container or env('BM_STORAGE_CONTAINER')
        if not container:
            raise ConfigurationError("Storage container is required (--container or BM_STORAGE_CONTAINER)")

        executor = BatchExecutor.from_settings(settings, recorder=recorder)
        storage = create_storage_system(
            args.storage, executor, env('BM_STORAGE_KEY', ''), env('BM_STORAGE_SECRET', ''),
            region=env('BM_STORAGE_REGION') or None, container=container)
        encoder = create_encoding_system(
            args.service, executor, env('BM_SERVICE_KEY', ''), env('BM_SERVICE_SECRET') or None,
            region=env('BM_SERVICE_REGION') or None,
            params={f'param{i}': env(f'BM_SERVICE_PARAM{i}', '') for i in (1, 2, 3)},
            input_downloaders=params.input_downloaders, input_min_segment=params.input_min_segment)
        return settings, params, storage, encoder

    async def run_encoding(self, args):
        """Run one encoding test iteration."""
        try:
            from cli.run import EncodingRunner
            from persistence.parquet import ParquetPersistence

            persistence = ParquetPersistence(args.report_dir) if args.report_dir else None
            settings, params, storage, encoder = self._build(args, recorder=persistence)

            logger.info(f"=== Encoding Test: {encoder.name} with {storage.api} storage ===")

            runner = EncodingRunner(encoder, storage, params, run_dir=settings.run_dir)
            success = await runner.prepare() and await runner.run()

            if persistence:
                path = persistence.save_to_file()
                if path:
                    logger.info(f"Saved request records to {path}")

            if success:
                logger.info("Encoding test completed successfully")
                return 0
            else:
                logger.error("Encoding test failed")
                return 1

        except Exception as e:
            logger.error(f"Error in encoding test: {e}")
            return 1

    async def run_cleanup(self, args):
        """Delete outputs of the last run."""
        try:
            from cli.cleanup import Cleaner

            settings, params, storage, encoder = self._build(args)

            logger.info("=== Cleanup ===")

            cleaner = Cleaner(encoder, storage, enabled=params.cleanup, run_dir=settings.run_dir)
            if await cleaner.cleanup():
                logger.info("Cleanup successful")
                return 0
            else:
                logger.error("Cleanup failed")
                return 1

        except Exception as e:
            logger.error(f"Error in cleanup: {e}")
            return 1

    def run(self, args=None):
        """Run the CLI with the given arguments."""
        if args is None:
            args = sys.argv[1:]

        parsed_args = self.parser.parse_args(args)

        if not parsed_args.command:
            self.parser.print_help()
            return 1

        if not parsed_args.service or not parsed_args.storage:
            logger.error("Encoding service and storage service are required")
            return 1

        try:
            if parsed_args.command == 'run':
                return asyncio.run(self.run_encoding(parsed_args))
            elif parsed_args.command == 'cleanup':
                return asyncio.run(self.run_cleanup(parsed_args))
            else:
                logger.error(f"Unknown command: {parsed_args.command}")
                return 1

        except KeyboardInterrupt:
            logger.info("Operation interrupted by user")
            return 1
        except Exception as e:
            logger.error(f"Unexpected error: {e}")
            return 1


def main():
    """Main entry point."""
    cli = TranscodeBenchmarkCLI()
    exit(cli.run())


if __name__ == '__main__':
    main()
