import asyncio

from fakes import FakeTestRunner, RecordingExecutor, ScriptedProvider, make_repository, quick_config

from foreman.agents import Roster
from foreman.errors import ProviderError
from foreman.pipeline import RetryPipeline, TargetOutcome
from foreman.providers import (
    AutoFixed,
    CommandSuggested,
    DeletionRequest,
    NormalEdit,
    Rejected,
)
from foreman.providers.guards import FULL_FILE_FEEDBACK
from foreman.runners import TestOutcome
from foreman.tasks import Target, TargetStatus, Task, TaskKind
from foreman.workspace import base_name

APP = "export const App = () => null;\n"
LONG_MODULE = "".join(f"export const value{index} = {index};\n" for index in range(20))


def _task(*paths: str, instruction: str = "Add logging", kind: TaskKind = TaskKind.CUSTOM) -> Task:
    task = Task(id="task-1", kind=kind, instruction=instruction, roster=Roster.from_agents(None))
    for path in paths:
        task.targets.append(Target(name=base_name(path), path=path))
    return task


def _process(pipeline: RetryPipeline, task: Task, index: int = 0, **kwargs) -> TargetOutcome:
    return asyncio.run(pipeline.process_target(task, index, **kwargs))


def _pipeline(repository, provider, **kwargs) -> RetryPipeline:
    config = kwargs.pop("config", None) or quick_config().pipeline
    return RetryPipeline(repository, provider, config=config, **kwargs)


def test_approved_edit_without_tests_marks_target_done() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider()
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 1
    assert outcome.review_calls == 1
    assert task.targets[0].status is TargetStatus.DONE
    assert repository.lookup_path("src/App.tsx").content == APP + "\n// updated\n"
    assert provider.build_calls[0]["agent"] == "Frontend Builder"
    assert provider.build_calls[0]["feedback"].startswith("Analysis findings:")


def test_placeholder_output_is_rejected_before_review() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(
        builds=[
            NormalEdit(content="// ...\n"),
            NormalEdit(content="export const App = () => {\n  // existing code\n};\n"),
            NormalEdit(content="export const App = () => <main />;\n"),
        ]
    )
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 3
    assert outcome.review_calls == 1
    assert provider.build_calls[1]["feedback"] == FULL_FILE_FEEDBACK
    assert provider.build_calls[2]["feedback"] == FULL_FILE_FEEDBACK
    assert repository.lookup_path("src/App.tsx").content == "export const App = () => <main />;\n"


def test_three_rejections_exhaust_the_budget() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(
        reviews=[Rejected(feedback="missing logger", issues=["no logger import"])] * 3
    )
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is False
    assert outcome.build_calls == 3
    assert outcome.review_calls == 3
    assert task.targets[0].status is TargetStatus.ERROR
    assert repository.updates == []
    assert provider.build_calls[1]["feedback"] == "missing logger"
    assert any("after 3 failed attempts" in line for line in task.log)


def test_attempt_budget_follows_config() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(reviews=[Rejected(feedback="no")] * 5)
    config = quick_config().pipeline
    config.max_attempts = 5

    outcome = _process(_pipeline(repository, provider, config=config), _task("src/App.tsx"))

    assert outcome.build_calls == 5
    assert outcome.review_calls == 5


def test_suspicious_shrink_is_rejected() -> None:
    repository = make_repository({"src/values.ts": LONG_MODULE})
    provider = ScriptedProvider(builds=[NormalEdit(content="export const value0 = 0;\n")])
    task = _task("src/values.ts")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 2
    assert outcome.review_calls == 1
    assert provider.build_calls[1]["feedback"] == FULL_FILE_FEEDBACK
    assert any("suspicious shrink" in line for line in task.log)


def test_removal_instruction_allows_large_shrink() -> None:
    repository = make_repository({"src/values.ts": LONG_MODULE})
    provider = ScriptedProvider(builds=[NormalEdit(content="export const value0 = 0;\n")])
    task = _task("src/values.ts", instruction="Remove the unused constants")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 1
    assert repository.lookup_path("src/values.ts").content == "export const value0 = 0;\n"


def test_identical_output_on_first_attempt_is_a_no_op() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(builds=[NormalEdit(content=APP)])
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert outcome.edited is False
    assert outcome.review_calls == 0
    assert repository.updates == []
    assert task.targets[0].status is TargetStatus.DONE


def test_deletion_request_removes_file_without_review() -> None:
    repository = make_repository({"src/legacy.ts": APP, "src/App.tsx": APP})
    provider = ScriptedProvider(builds=[DeletionRequest()])
    task = _task("src/legacy.ts", instruction="Drop the legacy module")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.deleted is True
    assert outcome.review_calls == 0
    assert task.targets[0].status is TargetStatus.DONE
    assert repository.lookup_path("src/legacy.ts") is None
    assert repository.lookup_path("src/App.tsx") is not None


def test_failing_tests_feed_back_into_next_attempt() -> None:
    repository = make_repository(
        {"src/utils.ts": "export const add = (a, b) => a - b;\n", "src/utils.test.ts": "it();\n"}
    )
    provider = ScriptedProvider()
    runner = FakeTestRunner(
        [TestOutcome(status="fail", failing_messages=["expected 3, received -1"])]
    )
    task = _task("src/utils.ts", instruction="Fix add")

    outcome = _process(_pipeline(repository, provider, test_runner=runner), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 2
    assert runner.calls == [["src/utils.test.ts"], ["src/utils.test.ts"]]
    assert provider.build_calls[1]["feedback"] == (
        "Code approved by Critic but FAILED TESTS. Errors: expected 3, received -1"
    )


def test_failing_tests_on_every_attempt_end_in_error() -> None:
    repository = make_repository(
        {"src/utils.ts": "export const add = 1;\n", "src/utils.test.ts": "it();\n"}
    )
    failing = TestOutcome(status="fail", failing_messages=["boom"])
    runner = FakeTestRunner([failing, failing, failing])
    task = _task("src/utils.ts")

    outcome = _process(_pipeline(repository, ScriptedProvider(), test_runner=runner), task)

    assert outcome.succeeded is False
    assert len(runner.calls) == 3
    assert task.targets[0].status is TargetStatus.ERROR


def test_docs_runs_skip_test_verification() -> None:
    repository = make_repository(
        {"src/utils.ts": "export const add = 1;\n", "src/utils.test.ts": "it();\n"}
    )
    provider = ScriptedProvider()
    runner = FakeTestRunner([TestOutcome(status="fail", failing_messages=["boom"])])
    task = _task("src/utils.ts", kind=TaskKind.DOCS, instruction="Document add")

    outcome = _process(_pipeline(repository, provider, test_runner=runner), task)

    assert outcome.succeeded is True
    assert runner.calls == []
    assert provider.generate_calls == ["utils.ts"]


def test_test_generation_uses_single_shot_generation() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider()

    _process(_pipeline(repository, provider), _task("src/App.tsx", kind=TaskKind.TESTS))

    assert provider.generate_calls == ["App.tsx"]
    assert len(provider.build_calls) == 1


def test_auto_fix_is_committed_without_running_tests() -> None:
    repository = make_repository(
        {"src/utils.ts": "export const add = 1;\n", "src/utils.test.ts": "it();\n"}
    )
    fixed = "export const add = (a, b) => a + b;\n"
    provider = ScriptedProvider(reviews=[AutoFixed(content=fixed, feedback="fixed sign")])
    runner = FakeTestRunner([TestOutcome(status="fail", failing_messages=["boom"])])
    task = _task("src/utils.ts")

    outcome = _process(_pipeline(repository, provider, test_runner=runner), task)

    assert outcome.succeeded is True
    assert runner.calls == []
    assert repository.lookup_path("src/utils.ts").content == fixed


def test_auto_fix_verification_can_be_enabled() -> None:
    repository = make_repository(
        {"src/utils.ts": "export const add = 1;\n", "src/utils.test.ts": "it();\n"}
    )
    provider = ScriptedProvider(reviews=[AutoFixed(content="export const add = 2;\n")])
    runner = FakeTestRunner([TestOutcome(status="fail", failing_messages=["boom"])])
    config = quick_config().pipeline
    config.verify_auto_fix = True

    outcome = _process(
        _pipeline(repository, provider, test_runner=runner, config=config),
        _task("src/utils.ts"),
    )

    assert outcome.succeeded is True
    assert outcome.build_calls == 2
    assert len(runner.calls) == 2


def test_suggested_command_is_executed_and_consumes_an_attempt() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(
        reviews=[CommandSuggested(command="npm install zod", feedback="zod missing")]
    )
    executor = RecordingExecutor()
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider, command_executor=executor), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 2
    assert executor.commands == ["npm install zod"]
    assert provider.build_calls[1]["feedback"] == (
        "Ran command: npm install zod. Please re-check if dependencies are now resolved."
    )


def test_suggested_command_without_executor_counts_as_rejection() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(
        reviews=[CommandSuggested(command="npm install zod", feedback="zod missing")] * 3
    )

    outcome = _process(_pipeline(repository, provider), _task("src/App.tsx"))

    assert outcome.succeeded is False
    assert provider.build_calls[1]["feedback"] == "zod missing"


def test_provider_failure_consumes_an_attempt() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(builds=[ProviderError("rate limited", call="build")])
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 2
    assert provider.build_calls[1]["feedback"].startswith("The previous build attempt failed")


def test_review_failure_consumes_an_attempt() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(reviews=[ProviderError("bad json", call="review")] * 3)

    outcome = _process(_pipeline(repository, provider), _task("src/App.tsx"))

    assert outcome.succeeded is False
    assert outcome.review_calls == 3


def test_unexpected_build_error_consumes_an_attempt() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(builds=[TimeoutError("slow")])
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert outcome.build_calls == 2
    assert task.targets[0].status is TargetStatus.DONE
    assert "slow" in provider.build_calls[1]["feedback"]


def test_unexpected_build_errors_on_every_attempt_end_in_error() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(builds=[TimeoutError("slow")] * 3)
    task = _task("src/App.tsx")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is False
    assert outcome.build_calls == 3
    assert task.targets[0].status is TargetStatus.ERROR
    assert repository.lookup_path("src/App.tsx").content == APP


def test_failing_command_executor_consumes_an_attempt() -> None:
    class BrokenExecutor(RecordingExecutor):
        async def execute(self, command: str) -> None:
            await super().execute(command)
            raise OSError("no shell")

    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(
        reviews=[CommandSuggested(command="npm install zod", feedback="zod missing")]
    )
    executor = BrokenExecutor()

    outcome = _process(
        _pipeline(repository, provider, command_executor=executor), _task("src/App.tsx")
    )

    assert outcome.succeeded is True
    assert executor.commands == ["npm install zod"]
    assert provider.build_calls[1]["feedback"] == "Running npm install zod failed: no shell"


def test_missing_target_path_is_created_as_new_file() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider(builds=[NormalEdit(content="export const logger = console;\n")])
    task = _task("src/logger.ts")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert provider.build_calls[0]["is_new_file"] is True
    assert repository.lookup_path("src/logger.ts").content == "export const logger = console;\n"
    assert any("Creating new file: src/logger.ts" in line for line in task.log)


def test_unusable_path_marks_target_error() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider()
    task = _task("../../etc/passwd")

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is False
    assert provider.build_calls == []
    assert task.targets[0].status is TargetStatus.ERROR


def test_approved_edit_queues_dependent_files() -> None:
    repository = make_repository(
        {
            "src/api.ts": "export const api = 1;\n",
            "src/App.tsx": "import { api } from './api';\nexport const App = api;\n",
            "src/other.ts": "export const other = 2;\n",
        }
    )
    task = _task("src/api.ts", instruction="Rename api to client")

    _process(_pipeline(repository, ScriptedProvider()), task)

    assert [target.path for target in task.targets] == ["src/api.ts", "src/App.tsx"]
    assert task.targets[1].status is TargetStatus.PENDING


def test_dependents_sharing_a_file_name_are_all_queued() -> None:
    repository = make_repository(
        {
            "src/api.ts": "export const api = 1;\n",
            "src/a/index.ts": "import { api } from '../api';\nexport const a = api;\n",
            "src/b/index.ts": "import { api } from '../api';\nexport const b = api;\n",
        }
    )
    task = _task("src/api.ts", instruction="Rename api to client")

    _process(_pipeline(repository, ScriptedProvider()), task)

    assert [target.path for target in task.targets] == [
        "src/api.ts",
        "src/a/index.ts",
        "src/b/index.ts",
    ]


def test_auto_fixed_edit_does_not_queue_dependents() -> None:
    repository = make_repository(
        {
            "src/api.ts": "export const api = 1;\n",
            "src/App.tsx": "import { api } from './api';\nexport const App = api;\n",
        }
    )
    provider = ScriptedProvider(reviews=[AutoFixed(content="export const client = 1;\n")])
    task = _task("src/api.ts")

    _process(_pipeline(repository, provider), task)

    assert [target.path for target in task.targets] == ["src/api.ts"]


def test_related_imports_are_passed_as_build_context() -> None:
    repository = make_repository(
        {
            "src/api.ts": "export const api = 1;\n",
            "src/App.tsx": "import { api } from './api';\nexport const App = api;\n",
        }
    )
    provider = ScriptedProvider()

    _process(_pipeline(repository, provider), _task("src/App.tsx"))

    assert provider.build_calls[0]["related_context"].startswith("[Context from src/api.ts]")


def test_status_hook_sees_monotonic_transitions() -> None:
    repository = make_repository({"src/App.tsx": APP})
    seen: list[TargetStatus] = []
    pipeline = _pipeline(
        repository,
        ScriptedProvider(reviews=[Rejected(feedback="no")]),
        on_status=lambda task, target: seen.append(target.status),
    )

    _process(pipeline, _task("src/App.tsx"))

    assert seen == [TargetStatus.PROCESSING, TargetStatus.DONE]


def test_cancellation_after_build_leaves_file_untouched() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider()
    cancelled = {"flag": False}
    provider.on_build = lambda: cancelled.update(flag=True)
    task = _task("src/App.tsx")

    outcome = _process(
        _pipeline(repository, provider), task, is_cancelled=lambda: cancelled["flag"]
    )

    assert outcome.cancelled is True
    assert outcome.review_calls == 0
    assert repository.updates == []
    assert task.targets[0].status is TargetStatus.ERROR


def test_terminal_target_is_not_processed_again() -> None:
    repository = make_repository({"src/App.tsx": APP})
    provider = ScriptedProvider()
    task = _task("src/App.tsx")
    task.targets[0].status = TargetStatus.DONE

    outcome = _process(_pipeline(repository, provider), task)

    assert outcome.succeeded is True
    assert provider.build_calls == []
