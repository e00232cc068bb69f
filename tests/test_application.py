"""
Use case tests - project store, queries, dashboard and optimization runs
against a fresh in-memory database.
"""
import uuid
from datetime import date

import pytest

from application import (
    ApplyOptimizationRunUseCase,
    CancelOptimizationRunUseCase,
    CreateProjectUseCase,
    GetConflictingProjectsUseCase,
    GetDashboardUseCase,
    GetOptimizationRunUseCase,
    GetProjectUseCase,
    InvalidInputError,
    ListProjectsUseCase,
    NotFoundError,
    ProjectsNearUseCase,
    RunOptimizationCommand,
    RunOptimizationUseCase,
    RunStatus,
    SearchProjectsUseCase,
    SeedProjectsUseCase,
    StoreIntegrityError,
    UpdateProjectCommand,
    UpdateProjectUseCase,
    ValidationError,
)
from config import get_settings
from infrastructure import demo_projects
from model import Location, Project, ProjectPriority, ProjectStatus, ProjectType
from service import ConflictDetector


PLAN_START = date(2024, 1, 1)


def _by_title(uow, title):
    return next(p for p in ListProjectsUseCase().execute(uow) if p.title == title)


@pytest.fixture()
def highway_and_pipeline(uow, make_command):
    """The two-project example: A (highway, dated) and B (pipeline, undated) 0.001° apart."""
    a = CreateProjectUseCase().execute(
        make_command(
            title="Highway A",
            type=ProjectType.HIGHWAY,
            priority=ProjectPriority.HIGH,
            location=Location(lat=28.6139, lng=77.2090, address="NH-44, New Delhi"),
            estimated_cost=50_000_000,
            estimated_duration=365,
            start_date=date(2024, 1, 15),
        ),
        uow,
    )
    b = CreateProjectUseCase().execute(
        make_command(
            title="Pipeline B",
            type=ProjectType.PIPELINE,
            location=Location(lat=28.6129, lng=77.2095, address="NH-44, New Delhi"),
            estimated_cost=25_000_000,
            estimated_duration=180,
        ),
        uow,
    )
    return a, b


async def _completed_run(uow, runner, project_ids):
    run = RunOptimizationUseCase().execute(
        RunOptimizationCommand(project_ids=project_ids, plan_start=PLAN_START), uow, runner
    )
    await runner.get(uuid.UUID(run.id)).wait()
    return GetOptimizationRunUseCase().execute(uuid.UUID(run.id), runner)


# ===================== PROJECT STORE =====================


class TestCreateProject:

    def test_new_project_is_pending_with_default_recommendations(self, uow, make_command):
        result = CreateProjectUseCase().execute(make_command(), uow)
        assert result.status == "pending"
        assert result.conflicts == []
        assert result.ai_recommendations == get_settings().DEFAULT_RECOMMENDATIONS
        assert len(result.ai_recommendations) == 2

    def test_supplied_recommendations_are_kept(self, uow, make_command):
        result = CreateProjectUseCase().execute(
            make_command(ai_recommendations=["Close the service lane at night"]), uow
        )
        assert result.ai_recommendations == ["Close the service lane at night"]

    def test_ids_are_unique(self, uow, make_command):
        ids = [CreateProjectUseCase().execute(make_command(), uow).id for _ in range(25)]
        assert len(set(ids)) == 25

    @pytest.mark.parametrize("overrides", [
        {"title": ""},
        {"title": "   "},
        {"description": ""},
        {"department": "\t"},
        {"location": Location(lat=28.7, lng=77.1, address="")},
        {"location": Location(lat=-91.0, lng=77.1, address="Ring Road")},
        {"estimated_cost": -1},
        {"estimated_duration": 0},
        {"start_date": date(2024, 6, 1), "end_date": date(2024, 5, 1)},
    ])
    def test_invalid_input_is_rejected_and_nothing_stored(self, uow, make_command, overrides):
        with pytest.raises(ValidationError):
            CreateProjectUseCase().execute(make_command(**overrides), uow)
        assert ListProjectsUseCase().execute(uow) == []

    def test_duplicate_id_is_an_integrity_error(self, uow):
        project = Project(title="Twice", location=Location(address="Somewhere"))
        with uow:
            uow.projects.add(project)
            with pytest.raises(StoreIntegrityError):
                uow.projects.add(project)


class TestUpdateProject:

    def test_list_keeps_insertion_order_after_updates(self, uow, make_command):
        created = [
            CreateProjectUseCase().execute(make_command(title=f"P{i}"), uow) for i in range(4)
        ]
        UpdateProjectUseCase().execute(
            UpdateProjectCommand(uuid.UUID(created[0].id), {"title": "P0 renamed"}), uow
        )
        UpdateProjectUseCase().execute(
            UpdateProjectCommand(uuid.UUID(created[2].id), {"status": "approved"}), uow
        )
        titles = [p.title for p in ListProjectsUseCase().execute(uow)]
        assert titles == ["P0 renamed", "P1", "P2", "P3"]

    def test_only_supplied_fields_change(self, uow, make_command):
        created = CreateProjectUseCase().execute(make_command(contractor="Acme"), uow)
        updated = UpdateProjectUseCase().execute(
            UpdateProjectCommand(uuid.UUID(created.id), {"estimated_cost": 5}), uow
        )
        assert updated.estimated_cost == 5
        assert updated.contractor == "Acme"
        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at

    def test_unknown_id_raises_not_found(self, uow):
        with pytest.raises(NotFoundError):
            UpdateProjectUseCase().execute(UpdateProjectCommand(uuid.uuid4(), {"title": "x"}), uow)

    def test_end_before_start_rejected_and_record_untouched(self, uow, make_command):
        created = CreateProjectUseCase().execute(make_command(start_date=date(2024, 6, 1)), uow)
        with pytest.raises(ValidationError):
            UpdateProjectUseCase().execute(
                UpdateProjectCommand(uuid.UUID(created.id), {"end_date": date(2024, 1, 1)}), uow
            )
        stored = GetProjectUseCase().execute(uuid.UUID(created.id), uow)
        assert stored.end_date is None

    @pytest.mark.parametrize("field_name", ["id", "created_at", "conflicts"])
    def test_identity_and_derived_fields_are_immutable(self, uow, make_command, field_name):
        created = CreateProjectUseCase().execute(make_command(), uow)
        with pytest.raises(ValidationError):
            UpdateProjectUseCase().execute(
                UpdateProjectCommand(uuid.UUID(created.id), {field_name: None}), uow
            )

    def test_list_returns_snapshots(self, uow, make_command):
        CreateProjectUseCase().execute(make_command(title="Original"), uow)
        with uow:
            snapshot = uow.projects.list_all()
        snapshot[0].title = "Mutated outside the store"
        assert ListProjectsUseCase().execute(uow)[0].title == "Original"

    def test_get_unknown_id_raises_not_found(self, uow):
        with pytest.raises(NotFoundError):
            GetProjectUseCase().execute(uuid.uuid4(), uow)


# ===================== CONFLICTS & QUERIES =====================


class TestConflicts:

    def test_nearby_projects_annotate_each_other(self, uow, highway_and_pipeline):
        a, b = highway_and_pipeline
        a_now = GetProjectUseCase().execute(uuid.UUID(a.id), uow)
        assert b.conflicts == ["Overlaps with 'Highway A' (highway) at NH-44, New Delhi"]
        assert a_now.conflicts == ["Overlaps with 'Pipeline B' (pipeline) at NH-44, New Delhi"]

    def test_conflicting_projects_of_each(self, uow, highway_and_pipeline):
        a, b = highway_and_pipeline
        of_a = GetConflictingProjectsUseCase().execute(uuid.UUID(a.id), uow)
        of_b = GetConflictingProjectsUseCase().execute(uuid.UUID(b.id), uow)
        assert [p.id for p in of_a] == [b.id]
        assert [p.id for p in of_b] == [a.id]

    def test_moving_a_project_clears_annotations(self, uow, highway_and_pipeline):
        a, b = highway_and_pipeline
        moved = UpdateProjectUseCase().execute(
            UpdateProjectCommand(uuid.UUID(b.id), {"location": {"lat": 19.07, "lng": 72.87}}), uow
        )
        assert moved.conflicts == []
        assert moved.location.address == "NH-44, New Delhi"
        assert GetProjectUseCase().execute(uuid.UUID(a.id), uow).conflicts == []

    @pytest.mark.parametrize("changes, expected", [
        ({"title": "Renamed"}, "Overlaps with 'Renamed' (highway) at NH-44, New Delhi"),
        ({"type": "utility"}, "Overlaps with 'Highway A' (utility) at NH-44, New Delhi"),
    ])
    def test_neighbour_annotation_follows_rename(self, uow, highway_and_pipeline, changes, expected):
        a, b = highway_and_pipeline
        UpdateProjectUseCase().execute(UpdateProjectCommand(uuid.UUID(a.id), changes), uow)
        assert GetProjectUseCase().execute(uuid.UUID(b.id), uow).conflicts == [expected]

    def test_annotations_survive_an_interleaved_update(self, uow, highway_and_pipeline, make_command):
        a, _ = highway_and_pipeline

        class InterleavingDetector(ConflictDetector):
            """Lands a contractor-only update between the snapshot and the write, once."""
            interleaved = False

            def annotations(self, projects):
                if not self.interleaved:
                    self.interleaved = True
                    UpdateProjectUseCase().execute(
                        UpdateProjectCommand(uuid.UUID(a.id), {"contractor": "Night Crew Ltd."}), uow
                    )
                return super().annotations(projects)

        c = CreateProjectUseCase(detector=InterleavingDetector()).execute(
            make_command(
                title="Cable Duct C",
                location=Location(lat=28.6134, lng=77.2092, address="NH-44, New Delhi"),
            ),
            uow,
        )

        assert len(c.conflicts) == 2
        assert GetProjectUseCase().execute(uuid.UUID(a.id), uow).contractor == "Night Crew Ltd."

    def test_conflicts_of_unknown_id_raises_not_found(self, uow):
        with pytest.raises(NotFoundError):
            GetConflictingProjectsUseCase().execute(uuid.uuid4(), uow)

    def test_stale_annotation_write_is_skipped(self, uow, highway_and_pipeline):
        with uow:
            revision = uow.projects.revision()
            project = uow.projects.list_all()[0]
            uow.projects.save(project)
            assert not uow.projects.annotate_conflicts({project.id: []}, revision)
            assert uow.projects.get(project.id).conflicts != []


class TestQueries:

    def test_radius_around_highway_returns_all_seed_projects(self, seeded_uow):
        result = ProjectsNearUseCase().execute(28.614, 77.209, 0.01, seeded_uow)
        assert [p.title for p in result] == [
            "NH-44 Highway Expansion",
            "Underground Gas Pipeline",
            "Smart Traffic Speed Breakers",
        ]

    def test_tight_radius_excludes_speed_breakers(self, seeded_uow):
        result = ProjectsNearUseCase().execute(28.614, 77.209, 0.0013, seeded_uow)
        assert [p.title for p in result] == ["NH-44 Highway Expansion", "Underground Gas Pipeline"]

    def test_negative_radius_rejected(self, seeded_uow):
        with pytest.raises(ValidationError):
            ProjectsNearUseCase().execute(28.614, 77.209, -0.1, seeded_uow)

    def test_search_by_status(self, seeded_uow):
        result = SearchProjectsUseCase().execute(seeded_uow, status=ProjectStatus.PENDING)
        assert [p.title for p in result] == ["Underground Gas Pipeline"]

    def test_search_by_text_matches_title_or_address(self, seeded_uow):
        assert [p.title for p in SearchProjectsUseCase().execute(seeded_uow, text="PIPELINE")] == [
            "Underground Gas Pipeline"
        ]
        assert len(SearchProjectsUseCase().execute(seeded_uow, text="nh-44")) == 3
        assert SearchProjectsUseCase().execute(seeded_uow, text="Mumbai") == []

    def test_seeding_twice_is_a_no_op(self, seeded_uow):
        assert SeedProjectsUseCase().execute(demo_projects(), seeded_uow) == 0
        assert len(ListProjectsUseCase().execute(seeded_uow)) == 3

    def test_dashboard_summarises_seed_data(self, seeded_uow):
        dashboard = GetDashboardUseCase().execute(seeded_uow)
        assert dashboard.total == 3
        assert (dashboard.pending, dashboard.approved, dashboard.in_progress) == (1, 1, 1)
        assert dashboard.completed == 0
        assert dashboard.with_conflicts == 3
        assert dashboard.total_cost == 77_000_000
        assert dashboard.recent_projects[0].title == "Smart Traffic Speed Breakers"
        assert len(dashboard.critical_projects) == 3

    def test_dashboard_on_empty_store(self, uow):
        dashboard = GetDashboardUseCase().execute(uow)
        assert dashboard.total == 0
        assert dashboard.total_cost == 0
        assert dashboard.recent_projects == []


# ===================== OPTIMIZATION RUNS =====================


class TestRunOptimization:

    @pytest.mark.asyncio
    async def test_two_project_example(self, uow, runner, highway_and_pipeline):
        a, b = highway_and_pipeline
        run = await _completed_run(uow, runner, [uuid.UUID(a.id), uuid.UUID(b.id)])

        assert run.status == "completed"
        report = run.report
        schedule = [(e.project_title, e.phase, e.recommended_start_date) for e in report.optimal_schedule]
        assert schedule == [
            ("Highway A", 1, "2024-01-15"),
            ("Pipeline B", 2, "2025-01-14"),
        ]
        assert report.cost_optimization.individual_cost == 75_000_000
        assert report.cost_optimization.optimized_cost == 63_750_000
        assert report.cost_optimization.savings == 11_250_000
        assert report.conflict_count == 1
        assert report.risk_assessment.level == "Medium"
        assert report.risk_assessment.score == 3.5

    @pytest.mark.asyncio
    async def test_active_project_blocks_pending_pipeline(self, seeded_uow, runner):
        pipeline = _by_title(seeded_uow, "Underground Gas Pipeline")
        run = await _completed_run(seeded_uow, runner, [uuid.UUID(pipeline.id)])

        entry = run.report.optimal_schedule[0]
        assert entry.phase == 1
        assert entry.recommended_start_date == "2025-01-14"
        assert "Waits for active project 'NH-44 Highway Expansion'" in entry.reasoning
        assert any("re-excavation" in line for line in run.report.recommendations)

    @pytest.mark.asyncio
    async def test_repeated_ids_collapse(self, uow, runner, highway_and_pipeline):
        a, _ = highway_and_pipeline
        run = await _completed_run(uow, runner, [uuid.UUID(a.id), uuid.UUID(a.id)])
        assert run.project_ids == [a.id]
        assert len(run.report.optimal_schedule) == 1

    @pytest.mark.asyncio
    async def test_empty_selection_rejected(self, uow, runner):
        with pytest.raises(InvalidInputError):
            RunOptimizationUseCase().execute(RunOptimizationCommand(project_ids=[]), uow, runner)

    @pytest.mark.asyncio
    async def test_unknown_id_rejected(self, uow, runner, highway_and_pipeline):
        a, _ = highway_and_pipeline
        with pytest.raises(InvalidInputError):
            RunOptimizationUseCase().execute(
                RunOptimizationCommand(project_ids=[uuid.UUID(a.id), uuid.uuid4()]), uow, runner
            )

    @pytest.mark.asyncio
    async def test_non_pending_project_rejected(self, seeded_uow, runner):
        highway = _by_title(seeded_uow, "NH-44 Highway Expansion")
        with pytest.raises(InvalidInputError):
            RunOptimizationUseCase().execute(
                RunOptimizationCommand(project_ids=[uuid.UUID(highway.id)]), seeded_uow, runner
            )

    def test_prepare_runs_without_an_event_loop(self, uow, highway_and_pipeline):
        a, _ = highway_and_pipeline
        prepared = RunOptimizationUseCase().prepare(
            RunOptimizationCommand(project_ids=[uuid.UUID(a.id)], plan_start=PLAN_START), uow
        )
        assert [p.title for p in prepared.selection] == ["Highway A"]
        assert len(prepared.snapshot) == 2
        assert prepared.plan_start == PLAN_START

    def test_unknown_run_raises_not_found(self, runner):
        with pytest.raises(NotFoundError):
            GetOptimizationRunUseCase().execute(uuid.uuid4(), runner)


class TestCancelOptimization:

    @pytest.mark.asyncio
    async def test_cancel_before_completion(self, uow, runner, highway_and_pipeline):
        a, b = highway_and_pipeline
        run = RunOptimizationUseCase().execute(
            RunOptimizationCommand(project_ids=[uuid.UUID(a.id), uuid.UUID(b.id)]), uow, runner
        )
        handle = runner.get(uuid.UUID(run.id))

        assert handle.cancel() is True
        assert handle.status is RunStatus.CANCELLED
        assert await handle.wait() is None
        assert handle.cancel() is False
        assert GetOptimizationRunUseCase().execute(handle.id, runner).status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_a_no_op(self, uow, runner, highway_and_pipeline):
        a, _ = highway_and_pipeline
        run = await _completed_run(uow, runner, [uuid.UUID(a.id)])
        handle = runner.get(uuid.UUID(run.id))

        assert handle.cancel() is False
        result = CancelOptimizationRunUseCase().execute(handle.id, runner)
        assert result.status == "completed"
        assert result.report is not None


class TestApplyOptimization:

    @pytest.mark.asyncio
    async def test_apply_writes_schedule_back(self, uow, runner, highway_and_pipeline):
        a, b = highway_and_pipeline
        run = await _completed_run(uow, runner, [uuid.UUID(a.id), uuid.UUID(b.id)])

        updated = ApplyOptimizationRunUseCase().execute(uuid.UUID(run.id), uow, runner)

        by_title = {p.title: p for p in updated}
        assert by_title["Highway A"].start_date == "2024-01-15"
        assert by_title["Highway A"].end_date == "2025-01-13"
        assert by_title["Pipeline B"].start_date == "2025-01-14"
        assert by_title["Pipeline B"].end_date == "2025-07-12"
        assert by_title["Pipeline B"].ai_recommendations[-1].startswith(
            "Follows completion of 'Highway A'"
        )
        assert GetOptimizationRunUseCase().execute(uuid.UUID(run.id), runner).applied is True

    @pytest.mark.asyncio
    async def test_applied_schedule_resolves_the_conflict(self, uow, runner, highway_and_pipeline):
        a, b = highway_and_pipeline
        run = await _completed_run(uow, runner, [uuid.UUID(a.id), uuid.UUID(b.id)])

        ApplyOptimizationRunUseCase().execute(uuid.UUID(run.id), uow, runner)

        assert GetConflictingProjectsUseCase().execute(uuid.UUID(a.id), uow) == []
        assert GetProjectUseCase().execute(uuid.UUID(a.id), uow).conflicts == []
        assert GetProjectUseCase().execute(uuid.UUID(b.id), uow).conflicts == []

    @pytest.mark.asyncio
    async def test_run_can_only_be_applied_once(self, uow, runner, highway_and_pipeline):
        a, _ = highway_and_pipeline
        run = await _completed_run(uow, runner, [uuid.UUID(a.id)])
        ApplyOptimizationRunUseCase().execute(uuid.UUID(run.id), uow, runner)
        with pytest.raises(InvalidInputError):
            ApplyOptimizationRunUseCase().execute(uuid.UUID(run.id), uow, runner)

    @pytest.mark.asyncio
    async def test_cancelled_run_cannot_be_applied(self, uow, runner, highway_and_pipeline):
        a, _ = highway_and_pipeline
        run = RunOptimizationUseCase().execute(
            RunOptimizationCommand(project_ids=[uuid.UUID(a.id)]), uow, runner
        )
        handle = runner.get(uuid.UUID(run.id))
        handle.cancel()
        await handle.wait()
        with pytest.raises(InvalidInputError):
            ApplyOptimizationRunUseCase().execute(handle.id, uow, runner)

    @pytest.mark.asyncio
    async def test_project_no_longer_pending_blocks_apply(self, uow, runner, highway_and_pipeline):
        a, _ = highway_and_pipeline
        run = await _completed_run(uow, runner, [uuid.UUID(a.id)])
        UpdateProjectUseCase().execute(
            UpdateProjectCommand(uuid.UUID(a.id), {"status": "approved"}), uow
        )
        with pytest.raises(InvalidInputError):
            ApplyOptimizationRunUseCase().execute(uuid.UUID(run.id), uow, runner)
        assert GetProjectUseCase().execute(uuid.UUID(a.id), uow).start_date == "2024-01-15"
