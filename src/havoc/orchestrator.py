"""Pipeline orchestrator.

Drives a single run from trigger to pull request:
1. Create the run record (pending)
2. Cloning: start the sandbox, clone the repository, load repo config,
   check out the working branch
3. Analyzing: build the issue spec and codebase context
4. Planning: ask for a plan, validate and order its tasks
5. Editing: execute tasks in the sandbox and stage the result
6. Testing: run the test command and the linter
7. Reviewing: self-review, confidence score, policy gates, intent card
8. Publishing: open a pull request when the gates pass, otherwise
   explain the failure on the issue

Every status change is persisted before the stage's work starts and then
emitted as a run event. Any exception moves the run to failed; the caller
always receives a PipelineResult and the sandbox is always removed.
"""

import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from havoc.agents.analyzer import analyze_issue
from havoc.agents.editor import combine_diffs, execute_tasks
from havoc.agents.planner import create_plan, sort_tasks, validate_plan
from havoc.agents.reviewer import format_review_result, self_review
from havoc.agents.tester import run_lint, run_tests
from havoc.artifacts.confidence import calculate_confidence_score
from havoc.artifacts.intent_card import (
    format_intent_card,
    generate_intent_card,
    generate_pr_body,
    generate_pr_title,
)
from havoc.config import load_havoc_config
from havoc.events.emitter import EventEmitter, safe_emit
from havoc.events.models import RunEvent, RunEventType
from havoc.github.client import GitHubClient
from havoc.github.credentials import CredentialProvider
from havoc.github.git import GitError, GitOperations, generate_branch_name
from havoc.github.models import PRCreateRequest
from havoc.llm.client import LLMClient
from havoc.policy import check_policy_gates, format_policy_result, get_policy_summary
from havoc.sandbox.manager import ExecResult, Sandbox, SandboxManager
from havoc.sandbox.runner import SandboxRunner
from havoc.state.machine import RunStateMachine
from havoc.state.models import RunStatus


logger = logging.getLogger(__name__)

POLICY_FAILED_ERROR = "Policy gates not passed"


class SyncError(Exception):
    """Raised when task diffs exist but nothing reached the git index.

    The editor reported changes, yet `git diff --cached` is empty, so the
    workspace and the sandbox view of it disagree.
    """

    def __init__(self, run_id: str, task_diffs: int, detail: Optional[str] = None):
        self.run_id = run_id
        self.task_diffs = task_diffs
        self.detail = detail
        message = (
            f"Sync issue: {task_diffs} task(s) produced changes but the "
            "staged diff is empty"
        )
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class NoChangesError(Exception):
    """Raised when no task produced a change."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__("No changes were generated")


def _git_failure_detail(stage: ExecResult, staged: ExecResult) -> Optional[str]:
    problems = []
    if stage.exit_code != 0:
        problems.append(f"git add exited {stage.exit_code}: {stage.stderr.strip()}")
    if staged.exit_code != 0:
        problems.append(
            f"git diff --cached exited {staged.exit_code}: {staged.stderr.strip()}"
        )
    return "; ".join(problems) or None


class PipelineInput(BaseModel):
    """Everything needed to start a run.

    Attributes:
        run_id: Run identifier; generated when omitted.
        owner: Repository owner.
        repo: Repository name.
        issue_number: Issue to resolve.
        issue_title: Issue title.
        issue_body: Issue body.
        installation_id: GitHub App installation, when triggered through one.
        user_id: User who triggered the run.
    """

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    issue_number: int = Field(..., gt=0)
    issue_title: str = ""
    issue_body: str = ""
    installation_id: Optional[int] = None
    user_id: Optional[str] = None

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"


class PipelineResult(BaseModel):
    """Outcome of a run, returned whether it succeeded or not."""

    run_id: str
    success: bool
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    confidence_score: int = 0
    policy_passed: bool = False
    error: Optional[str] = None


class PipelineOrchestrator:
    """Runs the issue-to-pull-request pipeline.

    Attributes:
        state_machine: Persists run status and artifacts.
        sandbox_manager: Starts a sandbox container per run.
        git: Clones, branches and pushes on the host workspace.
        github: GitHub REST client for default branch, PRs and comments.
        credentials: Supplies the access token used to clone and push.
        llm: LLM client shared by the agents.
        workspace_base_path: Parent directory of per-run workspaces.
        event_emitter: Receives run events.
    """

    def __init__(
        self,
        state_machine: RunStateMachine,
        sandbox_manager: SandboxManager,
        git: GitOperations,
        github: GitHubClient,
        credentials: CredentialProvider,
        llm: LLMClient,
        workspace_base_path: str,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.state_machine = state_machine
        self.sandbox_manager = sandbox_manager
        self.git = git
        self.github = github
        self.credentials = credentials
        self.llm = llm
        self.workspace_base_path = workspace_base_path
        self.event_emitter = event_emitter

    async def run_pipeline(self, pipeline_input: PipelineInput) -> PipelineResult:
        """Run the whole pipeline for one issue.

        Never raises: failures are recorded on the run, reported on the
        issue and returned in the result.

        Args:
            pipeline_input: The issue and repository to work on.

        Returns:
            The run's result.
        """
        run_id = pipeline_input.run_id
        repository = pipeline_input.repository
        started = time.monotonic()
        sandbox: Optional[Sandbox] = None
        result: Optional[PipelineResult] = None

        logger.info(
            "Starting run",
            extra={
                "run_id": run_id,
                "repository": repository,
                "issue_number": pipeline_input.issue_number,
            },
        )

        try:
            await self.state_machine.create(
                run_id=run_id,
                owner=pipeline_input.owner,
                repo=pipeline_input.repo,
                issue_number=pipeline_input.issue_number,
                issue_title=pipeline_input.issue_title,
                issue_body=pipeline_input.issue_body,
                installation_id=pipeline_input.installation_id,
                user_id=pipeline_input.user_id,
            )
            await self._emit(
                pipeline_input,
                RunEventType.STATUS,
                f"Run started for {repository}#{pipeline_input.issue_number}",
                {"status": RunStatus.PENDING.value},
            )

            await self._transition(
                pipeline_input, RunStatus.CLONING, "Provisioning sandbox"
            )
            workspace_dir = os.path.join(self.workspace_base_path, run_id)
            sandbox = await self.sandbox_manager.create(run_id, workspace_dir)
            result = await self._run_stages(pipeline_input, sandbox, workspace_dir)
        except Exception as exc:
            result = await self._handle_failure(pipeline_input, exc)
        finally:
            if sandbox is not None:
                await sandbox.cleanup()

            duration = time.monotonic() - started
            success = result.success if result is not None else False
            await self._emit(
                pipeline_input,
                RunEventType.COMPLETION,
                "Run completed" if success else "Run failed",
                {
                    "success": success,
                    "duration_seconds": duration,
                    "pr_url": result.pr_url if result is not None else None,
                },
            )
            logger.info(
                "Run finished",
                extra={
                    "run_id": run_id,
                    "success": success,
                    "duration_seconds": round(duration, 2),
                },
            )

        return result

    async def _run_stages(
        self,
        pipeline_input: PipelineInput,
        sandbox: Sandbox,
        workspace_dir: str,
    ) -> PipelineResult:
        run_id = pipeline_input.run_id
        owner, repo = pipeline_input.owner, pipeline_input.repo

        # Cloning; the status was set before the sandbox was provisioned
        await self._log(pipeline_input, "Cloning repository")
        token = await self.credentials.get_token(owner, repo)
        await self.git.clone(owner, repo, token, workspace_dir)
        await self._log(pipeline_input, "Repository cloned")

        config = load_havoc_config(workspace_dir)
        runner = SandboxRunner(sandbox, config, self.event_emitter)

        default_branch = await self.github.get_default_branch(owner, repo)
        branch_name = generate_branch_name(pipeline_input.issue_number, run_id)
        await self.git.create_branch(workspace_dir, branch_name, default_branch)
        await self._log(pipeline_input, f"Created branch {branch_name}")

        # Analyzing
        await self._transition(pipeline_input, RunStatus.ANALYZING, "Analyzing issue")
        analysis = await analyze_issue(
            pipeline_input.issue_title, pipeline_input.issue_body, runner, self.llm
        )
        await self._log(pipeline_input, f"Issue type: {analysis.spec.type.value}")

        # Planning
        await self._transition(pipeline_input, RunStatus.PLANNING, "Creating plan")
        plan = await create_plan(analysis, runner, self.llm)
        await self.state_machine.set_plan(run_id, plan.model_dump(by_alias=True))

        validation = validate_plan(plan)
        if not validation.valid:
            logger.warning(
                "Plan has invalid dependencies",
                extra={"run_id": run_id, "errors": validation.errors},
            )
            await self._log(
                pipeline_input,
                "Plan validation: " + "; ".join(validation.errors),
                {"errors": validation.errors},
            )
        await self._log(pipeline_input, f"Plan created with {len(plan.tasks)} tasks")

        # Editing
        await self._transition(pipeline_input, RunStatus.EDITING, "Executing tasks")
        task_results = await execute_tasks(
            sort_tasks(plan.tasks),
            runner,
            config,
            self.llm,
            analysis.context,
            self.event_emitter,
        )
        successful = sum(1 for task_result in task_results if task_result.success)
        await self._log(
            pipeline_input, f"Completed {successful}/{len(task_results)} tasks"
        )

        stage = await runner.stage_all()
        task_diffs = [r for r in task_results if r.diff]
        if not task_diffs:
            raise NoChangesError(run_id)
        staged = await runner.diff_staged()
        if not staged.stdout.strip():
            raise SyncError(
                run_id, len(task_diffs), _git_failure_detail(stage, staged)
            )
        await self._log(pipeline_input, "Staged changes")

        # Testing
        await self._transition(pipeline_input, RunStatus.TESTING, "Running tests")
        tests = await run_tests(runner, config)
        await self._log(
            pipeline_input,
            f"Tests {'PASSED' if tests.passed else 'FAILED'} ({tests.pass_rate:.1f}%)",
        )
        lint = await run_lint(runner)
        await self._log(pipeline_input, f"Lint {'PASSED' if lint.passed else 'FAILED'}")

        # Reviewing
        await self._transition(
            pipeline_input, RunStatus.REVIEWING, "Self-reviewing changes"
        )
        review = await self_review(
            task_results,
            tests,
            lint,
            pipeline_input.issue_title,
            pipeline_input.issue_body,
            self.llm,
        )
        await self._log(
            pipeline_input, f"Review assessment: {review.overall_assessment.value}"
        )

        confidence_score, breakdown = calculate_confidence_score(
            task_results, tests, lint, review, plan
        )
        await self._log(pipeline_input, f"Confidence score: {confidence_score}%")

        policy = check_policy_gates(config, confidence_score, tests, lint, review)
        await self._log(
            pipeline_input, f"Policy gates {'PASSED' if policy.passed else 'FAILED'}"
        )

        card = generate_intent_card(
            run_id,
            pipeline_input.issue_number,
            pipeline_input.issue_title,
            analysis,
            plan,
            task_results,
            review,
            confidence_score,
            breakdown,
        )
        intent_card = format_intent_card(card)
        await self.state_machine.set_artifacts(
            run_id,
            intent_card=intent_card,
            review=review.model_dump(mode="json"),
            confidence_score=confidence_score,
            policy_result=policy.model_dump(mode="json"),
        )

        # Publishing
        await self._transition(pipeline_input, RunStatus.PUBLISHING, "Publishing")

        if not policy.passed:
            summary = get_policy_summary(policy)
            await self.github.create_comment(
                owner,
                repo,
                pipeline_input.issue_number,
                _policy_failure_comment(
                    format_policy_result(policy), summary, intent_card, run_id
                ),
            )
            await self._transition(
                pipeline_input,
                RunStatus.FAILED,
                "Policy gates failed",
                error=POLICY_FAILED_ERROR,
            )
            return PipelineResult(
                run_id=run_id,
                success=False,
                confidence_score=confidence_score,
                policy_passed=False,
                error=summary,
            )

        title = generate_pr_title(card)
        commit = await runner.commit(title)
        if commit.exit_code != 0:
            raise GitError("commit", commit.stderr.strip(), commit.exit_code)
        await self.git.push(workspace_dir, branch_name)
        await self._log(pipeline_input, f"Pushed changes to {branch_name}")

        pr = await self.github.create_pr(
            owner,
            repo,
            PRCreateRequest(
                title=title,
                body=generate_pr_body(card, combine_diffs(task_results)),
                head_branch=branch_name,
                base_branch=default_branch,
            ),
        )
        await self._log(pipeline_input, f"Created PR #{pr.number}", {"pr_url": pr.url})

        await self.github.create_comment(
            owner, repo, pr.number, format_review_result(review)
        )
        await self.github.create_comment(
            owner, repo, pr.number, format_policy_result(policy)
        )

        await self.state_machine.set_pr(run_id, pr.url, pr.number, branch_name)
        await self._transition(pipeline_input, RunStatus.DONE, "Run completed")

        return PipelineResult(
            run_id=run_id,
            success=True,
            pr_url=pr.url,
            pr_number=pr.number,
            confidence_score=confidence_score,
            policy_passed=True,
        )

    async def _handle_failure(
        self, pipeline_input: PipelineInput, exc: Exception
    ) -> PipelineResult:
        """Record a failed run and tell the issue about it."""
        run_id = pipeline_input.run_id
        message = str(exc) or type(exc).__name__
        logger.exception(
            "Run failed",
            extra={"run_id": run_id, "error_type": type(exc).__name__},
        )

        status = None
        try:
            run = await self.state_machine.get(run_id)
            if run is not None:
                status = run.status.value
                if run.status not in (RunStatus.DONE, RunStatus.FAILED):
                    await self.state_machine.transition(
                        run_id, RunStatus.FAILED, error=message
                    )
        except Exception:
            logger.exception(
                "Failed to record run failure",
                extra={"run_id": run_id},
            )

        await self._emit(
            pipeline_input,
            RunEventType.ERROR,
            message,
            {"error_type": type(exc).__name__, "status": status or "unknown"},
        )

        try:
            await self.github.create_comment(
                pipeline_input.owner,
                pipeline_input.repo,
                pipeline_input.issue_number,
                f"## Havoc Run Failed\n\n❌ Error: {message}\n\nRun ID: `{run_id}`",
            )
        except Exception as comment_exc:
            logger.warning(
                "Failed to post failure comment",
                extra={"run_id": run_id, "error": str(comment_exc)},
            )

        return PipelineResult(
            run_id=run_id,
            success=False,
            confidence_score=0,
            policy_passed=False,
            error=message,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        pipeline_input: PipelineInput,
        to_status: RunStatus,
        message: str,
        error: Optional[str] = None,
    ) -> None:
        """Persist a status change, then emit it."""
        run = await self.state_machine.transition(
            pipeline_input.run_id, to_status, error=error
        )
        from_status = run.status_history[-1].from_status.value
        await self._emit(
            pipeline_input,
            RunEventType.STATUS,
            message,
            {"from_status": from_status, "status": to_status.value},
        )

    async def _log(
        self,
        pipeline_input: PipelineInput,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(message, extra={"run_id": pipeline_input.run_id})
        await self._emit(pipeline_input, RunEventType.LOG, message, data)

    async def _emit(
        self,
        pipeline_input: PipelineInput,
        event_type: RunEventType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await safe_emit(
            self.event_emitter,
            RunEvent(
                run_id=pipeline_input.run_id,
                event_type=event_type,
                message=message,
                repository=pipeline_input.repository,
                data=data or {},
            ),
        )


def _policy_failure_comment(
    policy_markdown: str, summary: str, intent_card: str, run_id: str
) -> str:
    return (
        "## Havoc Run Failed Policy Gates\n\n"
        f"{policy_markdown}\n\n"
        "### Summary\n"
        f"{summary}\n\n"
        "<details>\n"
        "<summary>📋 View Intent Card</summary>\n\n"
        f"{intent_card}\n\n"
        "</details>\n\n"
        "---\n"
        f"Run ID: `{run_id}`\n"
    )
