"""
Team execution: architecture, development and review for every epic.

Per epic:
1. The architect writes architecture notes (and may add shared contracts)
2. The epic branch is created from the repository's base branch
3. Developers are assigned: one senior instance for the complex stories,
   one junior instance for the rest (ids dev-<epic>-<n>)
4. Each story is developed on its own branch under an ExecutionSupervisor,
   reviewed, and on approval merged into the epic branch and pushed
5. A pull request is opened for the epic branch

Epics in different repositories run concurrently (up to
max_parallel_teams). Everything that touches one repository's working
tree runs on a single thread, one developer execution at a time.

A failing story (stagnation, rejected review, boundary error) is marked
failed and the rest of the epic carries on. The phase fails only when
every story failed.
"""

from __future__ import annotations

import json
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from taskforge.agents.executor import AgentRole, AgentTimeoutError
from taskforge.boundaries import VcsError
from taskforge.context import ContextKey
from taskforge.errors import ErrorCategory, OrchestrationError
from taskforge.events.types import EventType
from taskforge.models import (
    DeveloperRole,
    Epic,
    MemberStatus,
    PullRequestRef,
    Story,
    StoryStatus,
    TeamMember,
)
from taskforge.notifications import NotificationType
from taskforge.phases.base import Phase, PhaseName, PhaseResult, UsageMeter
from taskforge.supervisor import ExecutionStalledError, ExecutionSupervisor, ExecutionTimeoutError

if TYPE_CHECKING:
    from taskforge.context import OrchestrationContext


SENIOR_COMPLEXITY = {"complex", "very_complex"}

ARCHITECT_PROMPT = """You are the architect for epic {epic_id} "{title}" in repository {repository}.

{description}

Requirements:
{requirements}

Stories:
{stories}

Naming conventions: {conventions}
Contracts: {contracts}

Reply with one JSON object:
{{"architecture_notes": str, "shared_contracts"?: [str]}}"""

DEVELOPER_PROMPT = """You are a {seniority} developer implementing story {story_id} "{title}".

{description}

Files to read: {files_to_read}
Files to modify: {files_to_modify}
Files to create: {files_to_create}

Architecture notes for this epic:
{architecture}

Naming conventions: {conventions}
Contracts shared with other repositories: {contracts}
{feedback}
Only change the files listed above. Do not commit; the orchestrator commits your work."""

REVIEWER_PROMPT = """You are reviewing story {story_id} "{title}" on branch {branch}.

{description}

Changed files: {changed_files}
Acceptance: the story's files are implemented consistently with these contracts: {contracts}

Reply with one JSON object:
{{"verdict": "approved" | "changes_requested", "comments"?: str}}"""


def slugify(text: str, limit: int = 50) -> str:
    """Lowercase, dash-separated branch-safe slug."""
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:limit].rstrip("-")


def order_by_dependencies(stories: list[Story]) -> list[Story]:
    """
    Order stories so in-epic dependencies come first.

    Dependencies outside the list are ignored; cycles keep listed order.
    """
    by_id = {story.id: story for story in stories}
    ordered: list[Story] = []
    placed: set[str] = set()
    remaining = list(stories)

    while remaining:
        ready = [
            s for s in remaining
            if all(dep in placed or dep not in by_id for dep in s.dependencies)
        ]
        if not ready:
            ready = remaining[:1]
        for story in ready:
            ordered.append(story)
            placed.add(story.id)
            remaining.remove(story)

    return ordered


class TeamExecutionPhase(Phase):
    """Builds a team per epic and drives its stories to merged-ready branches."""

    name = PhaseName.TEAM_EXECUTION

    def run(self, context: OrchestrationContext, meter: UsageMeter) -> PhaseResult:
        epics = [e for e in context.task.orchestration.epics if not e.merged]
        if not epics:
            return PhaseResult.fail("no epics to execute", ErrorCategory.VALIDATION)

        self._reset_retryable_failures(context, epics)

        by_repository: dict[str, list[Epic]] = {}
        for epic in epics:
            by_repository.setdefault(epic.target_repository, []).append(epic)

        pr_errors: dict[str, OrchestrationError] = {}
        workers = max(1, min(self.config.orchestration.max_parallel_teams, len(by_repository)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="team") as pool:
            futures = [
                pool.submit(self._run_repository, context, repo_epics, meter, pr_errors)
                for repo_epics in by_repository.values()
            ]
            for future in futures:
                future.result()

        return self._summarize(context, epics, pr_errors)

    def _reset_retryable_failures(self, context: OrchestrationContext, epics: list[Epic]) -> None:
        with context.lock:
            for epic in epics:
                for story in epic.stories:
                    if (
                        story.status == StoryStatus.FAILED
                        and not story.push_verified
                        and story.failure_category == ErrorCategory.TRANSIENT.value
                    ):
                        story.status = StoryStatus.PENDING
                        story.error = None
                        story.failure_category = None

    def _run_repository(
        self,
        context: OrchestrationContext,
        epics: list[Epic],
        meter: UsageMeter,
        pr_errors: dict[str, OrchestrationError],
    ) -> None:
        # Epics of one repository share its working tree: strictly sequential
        for epic in epics:
            error = self._run_epic(context, epic, meter)
            if error is not None:
                pr_errors[epic.id] = error

    def _run_epic(
        self, context: OrchestrationContext, epic: Epic, meter: UsageMeter
    ) -> Optional[OrchestrationError]:
        """Run one epic; returns the error that kept its pull request from opening."""
        repo_path = context.repo_path(epic.target_repository)
        try:
            self._design(context, epic, repo_path, meter)
            self._ensure_branch(context, epic, repo_path)
        except OrchestrationError as e:
            for story in epic.stories:
                if story.status != StoryStatus.COMPLETED:
                    self._fail_story(context, epic, story, None, f"epic setup failed: {e}", e.category)
            return None

        members = self._ensure_team(context, epic)
        failed_ids: dict[str, str] = {}

        for story in order_by_dependencies(epic.stories):
            if story.status == StoryStatus.COMPLETED:
                continue
            if story.status == StoryStatus.FAILED:
                failed_ids[story.id] = story.failure_category or ErrorCategory.FATAL.value
                continue

            blocked_by = [dep for dep in story.dependencies if dep in failed_ids]
            if blocked_by:
                category = ErrorCategory(failed_ids[blocked_by[0]])
                self._fail_story(
                    context, epic, story, None,
                    f"blocked by failed dependency {', '.join(blocked_by)}", category,
                )
                failed_ids[story.id] = category.value
                continue

            member = self._member_for(context, members, story)
            self._deliver_story(context, epic, story, member, repo_path, meter)
            if story.status == StoryStatus.FAILED:
                failed_ids[story.id] = story.failure_category or ErrorCategory.FATAL.value

        return self._finish_epic(context, epic, members, repo_path)

    # Architecture and branch

    def _design(
        self, context: OrchestrationContext, epic: Epic, repo_path: Path, meter: UsageMeter
    ) -> None:
        if epic.architecture_notes:
            return

        prompt = ARCHITECT_PROMPT.format(
            epic_id=epic.id,
            title=epic.title,
            repository=epic.target_repository,
            description=epic.description,
            requirements=json.dumps(context.get(ContextKey.REQUIREMENTS, {}), indent=2),
            stories="\n".join(f"- {s.id}: {s.title}" for s in epic.stories),
            conventions=json.dumps(epic.naming_conventions),
            contracts=json.dumps(epic.contracts),
        )
        data = self.run_structured(context, AgentRole.ARCHITECT, prompt, meter, workspace=repo_path)

        with context.lock:
            epic.architecture_notes = data["architecture_notes"]
            for contract in data.get("shared_contracts", []):
                if contract not in epic.contracts:
                    epic.contracts.append(contract)
        context.update_entry(ContextKey.ARCHITECTURE, epic.id, epic.architecture_notes)
        self.persist(context)
        self.emit(context, EventType.ARCHITECTURE_COMPLETED, {
            "epic_id": epic.id,
            "contract_count": len(epic.contracts),
        }, agent_name=AgentRole.ARCHITECT.value)

    def _base_branch(self, context: OrchestrationContext, epic: Epic) -> str:
        repo = context.get_repository(epic.target_repository)
        return repo.default_branch if repo else self.config.git.base_branch

    def _ensure_branch(self, context: OrchestrationContext, epic: Epic, repo_path: Path) -> None:
        base = self._base_branch(context, epic)
        if epic.branch:
            self.services.vcs.create_branch(repo_path, epic.branch, base)
            context.register_branch(epic.branch, "epic", epic.target_repository, epic.id)
            return

        branch = self.config.git.epic_branch_pattern.format(epic_slug=slugify(f"{epic.id}-{epic.title}"))
        self.services.vcs.create_branch(repo_path, branch, base)
        with context.lock:
            epic.branch = branch
        context.register_branch(branch, "epic", epic.target_repository, epic.id)
        self.persist(context)
        self.emit(context, EventType.EPIC_BRANCH_CREATED, {
            "epic_id": epic.id,
            "branch": branch,
            "repository": epic.target_repository,
        }, idempotent=True)

    # Team

    def _ensure_team(self, context: OrchestrationContext, epic: Epic) -> list[TeamMember]:
        orch = context.task.orchestration
        existing = [m for m in orch.team if m.epic_id == epic.id]
        if existing:
            return existing

        senior = [s.id for s in epic.stories if s.complexity in SENIOR_COMPLEXITY]
        junior = [s.id for s in epic.stories if s.complexity not in SENIOR_COMPLEXITY]
        members = []
        for role, story_ids in ((DeveloperRole.SENIOR, senior), (DeveloperRole.JUNIOR, junior)):
            if story_ids:
                members.append(TeamMember(
                    id=f"dev-{epic.id}-{len(members) + 1}",
                    role=role,
                    epic_id=epic.id,
                    story_ids=story_ids,
                ))

        with context.lock:
            orch.team.extend(members)
            composition = [
                {"id": m.id, "role": m.role.value, "epic_id": m.epic_id, "story_ids": m.story_ids}
                for m in orch.team
            ]
        self.persist(context)
        self.emit(context, EventType.TEAM_COMPOSITION_DEFINED, {"developers": composition})
        return members

    @staticmethod
    def _member_for(
        context: OrchestrationContext, members: list[TeamMember], story: Story
    ) -> TeamMember:
        # A story keeps the developer it started with
        if story.assignee:
            member = context.task.orchestration.get_member(story.assignee)
            if member is not None:
                return member
        for member in members:
            if story.id in member.story_ids:
                return member
        return members[0]

    # Story lifecycle

    def _deliver_story(
        self,
        context: OrchestrationContext,
        epic: Epic,
        story: Story,
        member: TeamMember,
        repo_path: Path,
        meter: UsageMeter,
    ) -> None:
        rounds = self.config.orchestration.max_review_rounds
        feedback = ""

        for review_round in range(rounds + 1):
            try:
                self._develop(context, epic, story, member, repo_path, feedback)
                verdict, comments = self._review(context, epic, story, member, repo_path, meter, review_round)
                if verdict == "approved":
                    self._publish(context, epic, story, member, repo_path)
                    return
            except OrchestrationError as e:
                self._fail_story(context, epic, story, member, str(e), e.category)
                return
            feedback = comments

        self._fail_story(
            context, epic, story, member,
            f"review requested changes after {rounds + 1} round(s): {feedback}",
            ErrorCategory.VALIDATION,
        )

    def _develop(
        self,
        context: OrchestrationContext,
        epic: Epic,
        story: Story,
        member: TeamMember,
        repo_path: Path,
        feedback: str,
    ) -> None:
        vcs = self.services.vcs
        with context.lock:
            if story.assignee is None:
                story.assignee = member.id
            story.status = StoryStatus.IN_PROGRESS
            story.attempts += 1
            story.error = None
            story.failure_category = None
            story.branch = story.branch or self.config.git.story_branch_pattern.format(
                story_slug=slugify(f"{story.id}-{story.title}")
            )
            member.status = MemberStatus.WORKING
        self.persist(context)
        self.emit(context, EventType.STORY_STARTED, {
            "story_id": story.id,
            "epic_id": epic.id,
            "developer_id": story.assignee,
            "branch": story.branch,
            "attempt": story.attempts,
        })

        vcs.create_branch(repo_path, story.branch, epic.branch)
        context.register_branch(story.branch, "story", epic.target_repository, epic.id, story.id)

        prompt = DEVELOPER_PROMPT.format(
            seniority=member.role.value,
            story_id=story.id,
            title=story.title,
            description=story.description,
            files_to_read=", ".join(story.files_to_read) or "-",
            files_to_modify=", ".join(story.files_to_modify) or "-",
            files_to_create=", ".join(story.files_to_create) or "-",
            architecture=epic.architecture_notes or "-",
            conventions=json.dumps(epic.naming_conventions),
            contracts=json.dumps(epic.contracts),
            feedback=f"\nReviewer feedback to address:\n{feedback}\n" if feedback else "",
        )

        wall_clock = self.config.supervisor.wall_clock_seconds
        supervisor = ExecutionSupervisor(
            self.config.supervisor,
            diff_check=lambda: vcs.changed_file_count(repo_path),
            logger=context.logger,
            label=story.id,
        )
        supervisor.start()
        result = None
        try:
            result = self.run_agent(
                context,
                AgentRole.DEVELOPER,
                prompt,
                workspace=repo_path,
                on_event=supervisor.observe,
                timeout_seconds=wall_clock,
            )
        except AgentTimeoutError as e:
            raise ExecutionTimeoutError(max(e.elapsed_seconds, supervisor.elapsed_seconds), wall_clock) from e
        finally:
            if result is None:
                self._record_partial_spend(context, story, member, supervisor)

        with context.lock:
            member.usage.add(result.usage)
            member.cost_usd += result.cost_usd

        if vcs.commit_all(repo_path, f"{story.id}: {story.title}") is None:
            raise ExecutionStalledError("developer finished without changing any file", turn=result.num_turns)

    def _record_partial_spend(
        self,
        context: OrchestrationContext,
        story: Story,
        member: TeamMember,
        supervisor: ExecutionSupervisor,
    ) -> None:
        """Charge the tokens streamed by a run that ended without a result."""
        usage = supervisor.usage
        if not usage.total:
            return
        cost = round(usage.total / 1000 * self.config.budget.estimated_cost_per_1k_tokens, 6)
        with context.lock:
            member.usage.add(usage)
            member.cost_usd += cost
        self._log(context, "developer_partial_spend", {
            "story_id": story.id,
            "developer_id": member.id,
            "turns": supervisor.turn,
            "tokens": usage.total,
            "estimated_cost_usd": cost,
        }, level="warn")

    def _review(
        self,
        context: OrchestrationContext,
        epic: Epic,
        story: Story,
        member: TeamMember,
        repo_path: Path,
        meter: UsageMeter,
        review_round: int,
    ) -> tuple[str, str]:
        with context.lock:
            member.status = MemberStatus.REVIEWING
        changed = sorted({h.path for h in self.services.vcs.diff_hunks(repo_path, epic.branch, story.branch)})

        prompt = REVIEWER_PROMPT.format(
            story_id=story.id,
            title=story.title,
            branch=story.branch,
            description=story.description,
            changed_files=", ".join(changed) or "-",
            contracts=json.dumps(epic.contracts),
        )
        data = self.run_structured(context, AgentRole.REVIEWER, prompt, meter, workspace=repo_path)
        verdict = data["verdict"]
        comments = data.get("comments", "")

        with context.lock:
            story.review_verdict = verdict
            story.review_comments = comments
        self.persist(context)
        self.emit(context, EventType.STORY_REVIEWED, {
            "story_id": story.id,
            "verdict": verdict,
            "round": review_round + 1,
        }, agent_name=AgentRole.REVIEWER.value)
        return verdict, comments

    def _publish(
        self,
        context: OrchestrationContext,
        epic: Epic,
        story: Story,
        member: TeamMember,
        repo_path: Path,
    ) -> None:
        vcs = self.services.vcs
        sha = vcs.merge(repo_path, story.branch, epic.branch)
        vcs.push(repo_path, epic.branch)
        if not vcs.is_pushed(repo_path, epic.branch):
            raise VcsError(f"push of {epic.branch} could not be verified", category=ErrorCategory.TRANSIENT)

        context.mark_branch_pushed(epic.branch)
        with context.lock:
            story.push_verified = True
            story.status = StoryStatus.COMPLETED
            story.error = None
            if member.status != MemberStatus.BLOCKED:
                member.status = MemberStatus.IDLE
        self.persist(context)
        self.emit(context, EventType.STORY_PUSH_VERIFIED, {
            "story_id": story.id,
            "branch": epic.branch,
            "commit_sha": sha,
        })
        self.emit(context, EventType.STORY_COMPLETED, {
            "story_id": story.id,
            "epic_id": epic.id,
            "developer_id": member.id,
        })
        self.notify(context, NotificationType.PHASE_PROGRESS, f"Story {story.id} completed",
                    story_id=story.id, epic_id=epic.id)

    def _fail_story(
        self,
        context: OrchestrationContext,
        epic: Epic,
        story: Story,
        member: Optional[TeamMember],
        error: str,
        category: ErrorCategory,
    ) -> None:
        error = self.services.secrets.sanitize_text(error)
        if story.push_verified:
            # A verified push stays completed
            self._log(context, "story_failure_ignored", {"story_id": story.id, "error": error}, level="warn")
            return

        with context.lock:
            story.status = StoryStatus.FAILED
            story.error = error
            story.failure_category = category.value
            if member is not None:
                member.status = (
                    MemberStatus.BLOCKED if category == ErrorCategory.STAGNATION else MemberStatus.IDLE
                )
        self.persist(context)
        self.emit(context, EventType.STORY_FAILED, {
            "story_id": story.id,
            "epic_id": epic.id,
            "error": error,
            "category": category.value,
        })
        self._log(context, "story_failed", {
            "story_id": story.id,
            "category": category.value,
            "error": error,
        }, level="warn")
        self.notify(context, NotificationType.PHASE_PROGRESS, f"Story {story.id} failed: {error}",
                    story_id=story.id, epic_id=epic.id)

    # Epic completion

    def _finish_epic(
        self,
        context: OrchestrationContext,
        epic: Epic,
        members: list[TeamMember],
        repo_path: Path,
    ) -> Optional[OrchestrationError]:
        completed = epic.stories_with_status(StoryStatus.COMPLETED)
        failed = epic.stories_with_status(StoryStatus.FAILED)

        with context.lock:
            for member in members:
                stories = [epic.get_story(sid) for sid in member.story_ids]
                if all(s is not None and s.status == StoryStatus.COMPLETED for s in stories):
                    member.status = MemberStatus.COMPLETED
                elif member.status != MemberStatus.BLOCKED:
                    member.status = MemberStatus.IDLE

        pr_error: Optional[OrchestrationError] = None
        if completed and epic.pull_request is None:
            try:
                self._open_pull_request(context, epic, members, repo_path)
            except OrchestrationError as e:
                pr_error = e
                self._log(context, "pull_request_failed", {
                    "epic_id": epic.id,
                    "category": e.category.value,
                    "error": str(e),
                }, level="warn")

        self.persist(context)
        self.emit(context, EventType.DEVELOPERS_COMPLETED, {
            "epic_id": epic.id,
            "completed": [s.id for s in completed],
            "failed": [s.id for s in failed],
        })
        return pr_error

    def _open_pull_request(
        self,
        context: OrchestrationContext,
        epic: Epic,
        members: list[TeamMember],
        repo_path: Path,
    ) -> None:
        body = "\n".join(
            [epic.description, "", "Stories:"]
            + [f"- [{'x' if s.status == StoryStatus.COMPLETED else ' '}] {s.id}: {s.title}" for s in epic.stories]
        )
        info = self.services.vcs.open_pull_request(
            repo_path,
            head=epic.branch,
            base=self._base_branch(context, epic),
            title=f"{epic.id}: {epic.title}",
            body=body,
        )
        with context.lock:
            epic.pull_request = PullRequestRef(
                number=info.number,
                url=info.url,
                branch=epic.branch,
                repository=epic.target_repository,
                epic_id=epic.id,
            )
            for member in members:
                if any(
                    (story := epic.get_story(sid)) is not None and story.status == StoryStatus.COMPLETED
                    for sid in member.story_ids
                ):
                    member.pull_requests.append(info.url)
        self.emit(context, EventType.PR_CREATED, {
            "epic_id": epic.id,
            "pr_number": info.number,
            "pr_url": info.url,
            "branch": epic.branch,
            "repository": epic.target_repository,
        }, idempotent=True)

    def _summarize(
        self,
        context: OrchestrationContext,
        epics: list[Epic],
        pr_errors: dict[str, OrchestrationError],
    ) -> PhaseResult:
        stories = [story for epic in epics for story in epic.stories]
        completed = [s for s in stories if s.status == StoryStatus.COMPLETED]
        failed = [s for s in stories if s.status == StoryStatus.FAILED]
        warnings = [f"story {s.id} failed: {s.error}" for s in failed]
        data = {
            "completed_stories": [s.id for s in completed],
            "failed_stories": [s.id for s in failed],
            "pull_requests": {
                e.id: e.pull_request.url for e in epics if e.pull_request is not None
            },
        }

        if stories and len(failed) == len(stories):
            categories = {s.failure_category for s in failed}
            if ErrorCategory.TRANSIENT.value in categories:
                category = ErrorCategory.TRANSIENT
            elif categories == {ErrorCategory.STAGNATION.value}:
                category = ErrorCategory.STAGNATION
            else:
                category = ErrorCategory.FATAL
            result = PhaseResult.fail(f"all {len(stories)} stories failed", category, data)
            result.warnings = warnings
            return result

        if pr_errors:
            # Every epic with completed stories must have a pull request
            categories = {e.category for e in pr_errors.values()}
            category = (
                ErrorCategory.TRANSIENT if ErrorCategory.TRANSIENT in categories
                else next(iter(pr_errors.values())).category
            )
            details = "; ".join(f"{epic_id}: {e}" for epic_id, e in sorted(pr_errors.items()))
            result = PhaseResult.fail(f"pull request not opened for {details}", category, data)
            result.warnings = warnings
            return result

        return PhaseResult.ok(data, warnings=warnings)

