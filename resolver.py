from pipeline import Join, Pipeline, Unset, Unwind
from registry import Registry, Relation


class RelationResolver:
    """Appends join stages that embed related documents in place of their ids."""

    def __init__(self, registry: Registry):
        self.registry = registry

    def expand(self, resource: str, pipeline: Pipeline) -> Pipeline:
        for rel in self.registry.get(resource).relations:
            pipeline = self.expand_relation(resource, rel.field, pipeline)
        return pipeline

    def expand_relation(self, resource: str, field: str, pipeline: Pipeline) -> Pipeline:
        rel = self.registry.get(resource).relation(field)
        if rel is None:
            raise ValueError(f"{resource} has no relation '{field}'")
        return self._join(rel, rel.field, rel.depth, pipeline)

    def _join(self, rel: Relation, path: str, depth: int, pipeline: Pipeline) -> Pipeline:
        if depth < 1:
            return pipeline
        target = self.registry.get(rel.target)
        if not pipeline.joined(path):
            pipeline = pipeline.then(
                Join(collection=target.collection, local_field=path, as_field=path),
                Unwind(path),
            )
            if target.hidden_fields:
                pipeline = pipeline.then(Unset(tuple(f"{path}.{f}" for f in target.hidden_fields)))
        # nested joins run after the parent join, one level at a time
        for nested in target.relations:
            pipeline = self._join(nested, f"{path}.{nested.field}", min(depth - 1, nested.depth), pipeline)
        return pipeline

    def relation_paths(self, resource: str):
        """Dotted paths of every expanded relation, parents before children."""
        paths = []

        def walk(schema_name, prefix, depth):
            for rel in self.registry.get(schema_name).relations:
                d = min(depth, rel.depth) if prefix else rel.depth
                if d < 1:
                    continue
                path = f"{prefix}{rel.field}"
                paths.append(path)
                walk(rel.target, path + ".", d - 1)

        walk(resource, "", 2)
        return paths

    def resolve(self, resource: str, pipeline: Pipeline) -> Pipeline:
        """Expand every relation and strip the resource's own hidden fields."""
        pipeline = self.expand(resource, pipeline)
        hidden = self.registry.get(resource).hidden_fields
        return pipeline.then(Unset(hidden)) if hidden else pipeline
