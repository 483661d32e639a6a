#!/usr/bin/env python3
"""
Deployment Readiness Validator for the good-news backend.

Checks configuration, document store connectivity, the classifier prompt
file and (optionally) live AI connectivity, then compiles a report with
recommendations for anything that is missing or degraded.
"""

import os
import sys
import asyncio
import json
import logging
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime

import pytz
import yaml

from goodnews.services.ai_service import AIService
from goodnews.services.document_store import DocumentStore
from goodnews.settings import Settings
from goodnews.utils.errors import ConfigError


PASS = "PASS"
WARN = "WARN"
FAIL = "FAIL"

CATEGORIES = ("configuration", "store", "prompts", "providers", "ai")


@dataclass
class ValidationResult:
    """Result of a validation check."""
    name: str
    status: str  # 'PASS', 'FAIL', 'WARN'
    message: str
    details: Optional[Dict[str, Any]] = None
    recommendation: Optional[str] = None


@dataclass
class DeploymentReport:
    """Complete deployment readiness report."""
    timestamp: datetime
    environment: str
    results: Dict[str, List[ValidationResult]]
    ready_for_deployment: bool
    critical_issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0

    def calculate_metrics(self) -> None:
        all_results = [r for results in self.results.values() for r in results]
        self.total_checks = len(all_results)
        self.passed_checks = sum(1 for r in all_results if r.status == PASS)
        self.failed_checks = sum(1 for r in all_results if r.status == FAIL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "environment": self.environment,
            "ready_for_deployment": self.ready_for_deployment,
            "metrics": {
                "total_checks": self.total_checks,
                "passed_checks": self.passed_checks,
                "failed_checks": self.failed_checks,
            },
            "critical_issues": self.critical_issues,
            "warnings": self.warnings,
            "recommendations": self.recommendations,
            "results": {
                category: [
                    {"name": r.name, "status": r.status, "message": r.message, "details": r.details}
                    for r in results
                ]
                for category, results in self.results.items()
            },
        }


class DeploymentValidator:
    """
    Validator for deployment readiness.

    ``store`` may be an already-open DocumentStore; otherwise one is opened
    (and closed) against ``settings.store.db_path`` for the connectivity check.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        environment: str = "development",
        check_ai_connectivity: bool = False,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.environment = environment
        self.check_ai_connectivity = check_ai_connectivity
        self.env = os.environ if env is None else env
        self.logger = logging.getLogger(__name__)
        self.results: Dict[str, List[ValidationResult]] = {category: [] for category in CATEGORIES}

    def _add(self, category: str, result: ValidationResult) -> None:
        self.results[category].append(result)

    async def validate(self) -> DeploymentReport:
        """Run all validation categories and compile a report."""
        self.logger.info(f"Starting deployment validation for {self.environment}")
        self.results = {category: [] for category in CATEGORIES}

        self._validate_configuration()
        if self.settings is not None:
            await self._validate_store()
            self._validate_prompts()
            self._validate_providers()
            await self._validate_ai()

        return self._generate_report()

    def _validate_configuration(self) -> None:
        """Environment variables and settings validity."""
        for var in ("NEWSDATA_API_KEY",):
            if self.env.get(var):
                self._add("configuration", ValidationResult(
                    name=f"Environment: {var}", status=PASS, message=f"{var} is configured"))
            else:
                self._add("configuration", ValidationResult(
                    name=f"Environment: {var}", status=FAIL, message=f"{var} is missing - CRITICAL",
                    recommendation=f"Set {var} so the primary news provider can be queried"))

        for var, consequence in (
            ("GEMINI_API_KEY", "classification will use the keyword heuristic only"),
            ("GNEWS_API_KEY", "the fallback provider will be skipped"),
            ("ADMIN_USER_IDS", "admin operations require users/{uid}.isAdmin"),
        ):
            if self.env.get(var):
                self._add("configuration", ValidationResult(
                    name=f"Environment: {var}", status=PASS, message=f"{var} is configured"))
            else:
                self._add("configuration", ValidationResult(
                    name=f"Environment: {var}", status=WARN, message=f"{var} not set: {consequence}",
                    recommendation=f"Set {var} unless {consequence} is acceptable"))

        if self.settings is None:
            try:
                self.settings = Settings.load(env=self.env)
            except ConfigError as e:
                self._add("configuration", ValidationResult(
                    name="Settings", status=FAIL, message=f"Invalid configuration: {e.message}",
                    details=e.details, recommendation="Fix the listed settings before deploying"))
                return
        else:
            try:
                self.settings.validate()
            except ConfigError as e:
                self._add("configuration", ValidationResult(
                    name="Settings", status=FAIL, message=f"Invalid configuration: {e.message}",
                    details=e.details, recommendation="Fix the listed settings before deploying"))
                return
        self._add("configuration", ValidationResult(
            name="Settings", status=PASS, message="Configuration is valid",
            details={"strategy": self.settings.fetch.strategy, "daily_limit": self.settings.limits.daily_articles}))

        py_ok = sys.version_info >= (3, 9)
        self._add("configuration", ValidationResult(
            name="Python Version",
            status=PASS if py_ok else FAIL,
            message=f"Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        ))

    async def _validate_store(self) -> None:
        owns_store = self.store is None
        store = self.store or DocumentStore(self.settings.store.db_path)
        try:
            if owns_store:
                await store.initialize()
            ok = await store.ping()
            self._add("store", ValidationResult(
                name="Document Store",
                status=PASS if ok else FAIL,
                message=f"Connected to {store.db_path}" if ok else "Store ping failed",
                recommendation=None if ok else "Check the database path and permissions"))
        except Exception as e:
            self._add("store", ValidationResult(
                name="Document Store", status=FAIL, message=f"Cannot open store: {e}",
                recommendation="Check GOODNEWS_DB_PATH points to a writable location"))
        finally:
            if owns_store:
                await store.close()

    def _validate_prompts(self) -> None:
        path = self.settings.ai.prompts_path
        try:
            with open(path, "r", encoding="utf-8") as f:
                prompts = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            self._add("prompts", ValidationResult(
                name="Prompts File", status=FAIL, message=f"Cannot load {path}: {e}",
                recommendation="Restore goodnews/config/prompts.yaml"))
            return
        template = (prompts.get("good_news_classification") or {}).get("template", "")
        missing = [p for p in ("{categories}", "{articles_json}") if p not in template]
        if missing:
            self._add("prompts", ValidationResult(
                name="Prompts File", status=FAIL,
                message=f"good_news_classification template is missing {', '.join(missing)}",
                recommendation="Restore the classification template placeholders"))
        else:
            self._add("prompts", ValidationResult(name="Prompts File", status=PASS, message=f"Loaded {path}"))

    def _validate_providers(self) -> None:
        enabled = self.settings.enabled_providers()
        if not enabled:
            self._add("providers", ValidationResult(
                name="Providers", status=FAIL, message="No news provider is enabled",
                recommendation="Enable at least one provider"))
            return
        for provider in sorted(enabled, key=lambda p: p.priority):
            if provider.api_key:
                self._add("providers", ValidationResult(
                    name=f"Provider: {provider.name}", status=PASS,
                    message=f"Priority {provider.priority}, key configured"))
            else:
                self._add("providers", ValidationResult(
                    name=f"Provider: {provider.name}", status=WARN,
                    message=f"Priority {provider.priority}, no API key (will be skipped)"))

    async def _validate_ai(self) -> None:
        if not self.settings.has_ai:
            self._add("ai", ValidationResult(
                name="Gemini", status=WARN, message="Not configured, heuristic classification only"))
            return
        if not self.check_ai_connectivity:
            self._add("ai", ValidationResult(name="Gemini", status=PASS, message="API key configured"))
            return
        try:
            ai = AIService(
                api_key=self.settings.ai.api_key,
                model=self.settings.ai.model,
                prompts_path=self.settings.ai.prompts_path,
                timeout_seconds=self.settings.ai.timeout_seconds,
            )
            ok = await ai.test_connection()
        except Exception as e:
            ok = False
            self.logger.warning(f"Gemini connectivity check failed: {e}")
        self._add("ai", ValidationResult(
            name="Gemini",
            status=PASS if ok else WARN,
            message="Connected" if ok else "Unreachable, classification will degrade to the heuristic",
            recommendation=None if ok else "Verify GEMINI_API_KEY and model access"))

    def _generate_report(self) -> DeploymentReport:
        """Aggregate results and compute readiness."""
        critical: List[str] = []
        warns: List[str] = []
        recommendations: List[str] = []
        for category, results in self.results.items():
            for r in results:
                if r.status == FAIL:
                    critical.append(f"{category}: {r.message}")
                elif r.status == WARN:
                    warns.append(f"{category}: {r.message}")
                if r.recommendation:
                    recommendations.append(r.recommendation)

        report = DeploymentReport(
            timestamp=datetime.now(pytz.UTC),
            environment=self.environment,
            results=self.results,
            ready_for_deployment=not critical,
            critical_issues=critical,
            warnings=warns,
            recommendations=recommendations,
        )
        report.calculate_metrics()
        return report

    def save_report(self, report: DeploymentReport, directory: str = "deployment_reports") -> str:
        os.makedirs(directory, exist_ok=True)
        filename = os.path.join(directory, f"validation_{report.timestamp.strftime('%Y%m%d_%H%M%S')}.json")
        with open(filename, "w", encoding="utf-8") as f:
            json.dump(report.to_dict(), f, indent=2, default=str)
        self.logger.info(f"Report saved to {filename}")
        return filename

    def print_report(self, report: DeploymentReport) -> None:
        """Pretty-print report with simple color cues."""
        GREEN = "\033[92m"
        YELLOW = "\033[93m"
        RED = "\033[91m"
        BOLD = "\033[1m"
        RESET = "\033[0m"

        print(f"\n{BOLD}{'='*60}{RESET}")
        print(f"{BOLD}DEPLOYMENT READINESS REPORT{RESET}")
        print(f"{'='*60}")
        print(f"Environment: {report.environment}")
        print(f"Timestamp: {report.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        print(f"{'='*60}\n")

        if report.ready_for_deployment:
            print(f"{GREEN}{BOLD}✅ READY FOR DEPLOYMENT{RESET}\n")
        else:
            print(f"{RED}{BOLD}❌ NOT READY - CRITICAL ISSUES FOUND{RESET}\n")

        print(f"{BOLD}Summary:{RESET}")
        print(f"  Total Checks: {report.total_checks}")
        print(f"  Passed: {GREEN}{report.passed_checks}{RESET}")
        print(f"  Failed: {RED}{report.failed_checks}{RESET}")
        warns = report.total_checks - report.passed_checks - report.failed_checks
        print(f"  Warnings: {YELLOW}{warns}{RESET}\n")

        for category, results in report.results.items():
            if not results:
                continue
            print(f"{BOLD}{category.replace('_', ' ').title()}:{RESET}")
            for r in results:
                symbol = f"{GREEN}✓{RESET}" if r.status == PASS else (f"{RED}✗{RESET}" if r.status == FAIL else f"{YELLOW}!{RESET}")
                print(f"  {symbol} {r.name}: {r.message}")
            print()

        if report.recommendations:
            print(f"{BOLD}Recommendations:{RESET}")
            for rec in report.recommendations:
                print(f"  → {rec}")
            print()
        print(f"{BOLD}{'='*60}{RESET}\n")


async def _main() -> None:
    import argparse
    from dotenv import load_dotenv

    parser = argparse.ArgumentParser(description="Deployment Readiness Validator")
    parser.add_argument("--env", choices=["development", "staging", "production"], default="development", help="Target environment")
    parser.add_argument("--live", action="store_true", help="Also call the Gemini API")
    parser.add_argument("--save", action="store_true", help="Write the report to deployment_reports/")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    validator = DeploymentValidator(environment=args.env, check_ai_connectivity=args.live)
    print(f"🔍 Running deployment validation for {args.env} environment...\n")
    report = await validator.validate()
    validator.print_report(report)
    if args.save:
        validator.save_report(report)
    sys.exit(0 if report.ready_for_deployment else 1)


if __name__ == "__main__":
    asyncio.run(_main())
